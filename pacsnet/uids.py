# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
UIDs used by the package: application context, implementation identification,
transfer syntaxes and SOP Classes.
"""

from pydicom import uid

APPLICATION_CONTEXT_NAME = uid.UID('1.2.840.10008.3.1.1.1')
"""DICOM Application Context Name"""

IMPLEMENTATION_UID = uid.UID('1.2.826.0.1.3680043.8.498.1.1.155105445218102811803000')
IMPLEMENTATION_VERSION_NAME = 'PACSNET_10'

IMPLICIT_VR_LITTLE_ENDIAN = uid.ImplicitVRLittleEndian
EXPLICIT_VR_LITTLE_ENDIAN = uid.ExplicitVRLittleEndian

# Preferred first, mandatory fallback last
SUPPORTED_TRANSFER_SYNTAXES = (EXPLICIT_VR_LITTLE_ENDIAN, IMPLICIT_VR_LITTLE_ENDIAN)

VERIFICATION_SOP_CLASS = uid.UID('1.2.840.10008.1.1')
STUDY_ROOT_FIND_SOP_CLASS = uid.UID('1.2.840.10008.5.1.4.1.2.2.1')
ENCAPSULATED_PDF_STORAGE = uid.UID('1.2.840.10008.5.1.4.1.1.104.1')
