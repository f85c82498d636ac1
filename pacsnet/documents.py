# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
Encapsulated PDF (PS 3.3 A.45.1) dataset builder.

Report metadata is accepted as a mapping with either camelCase or snake_case
keys::

    ds = build_encapsulated_pdf(pdf_bytes, {
        'patientName': 'DOE^JOHN',
        'patientId': '12345',
        'studyInstanceUID': '1.2.3.4',
        'studyDate': '20241113',
        'accessionNumber': 'A001'
    })
"""

import datetime

from pydicom import dataset
from pydicom import uid as dcm_uid

from . import attributes
from . import uids

REQUIRED_METADATA = ('patient_name', 'patient_id', 'study_instance_uid')

MIME_TYPE_PDF = 'application/pdf'
DEFAULT_DOCUMENT_TITLE = 'Radiology Report'
MAX_UID_LENGTH = 64


def generate_uid():
    """Generates globally unique UID (``2.25.`` followed by UUID integer)"""
    return dcm_uid.generate_uid(prefix=None)


def normalize_metadata(metadata):
    """Converts metadata keys to snake_case, drops empty values"""
    result = {}
    for key, value in metadata.items():
        if value in (None, ''):
            continue
        result[attributes.snake_case(key)] = value
    return result


def build_encapsulated_pdf(pdf_bytes, metadata, now=None):
    """Builds Encapsulated PDF Storage dataset.

    :param pdf_bytes: PDF document
    :type pdf_bytes: bytes
    :param metadata: report metadata. Required keys are ``patientName``,
                     ``patientId`` and ``studyInstanceUID``. ``studyDate``,
                     ``accessionNumber``, ``patientBirthDate``, ``patientSex``,
                     ``studyDescription``, ``institutionName``, ``reportDate``,
                     ``reportTime``, ``seriesInstanceUID``, ``sopInstanceUID``
                     and ``documentTitle`` are optional.
    :param now: current date and time, used when report date or time
                is not provided
    :raises ValueError: if PDF is empty or required metadata is missing
    :return: dataset ready to be sent with C-STORE
    :rtype: pydicom.dataset.Dataset
    """
    if not pdf_bytes:
        raise ValueError('PDF document is empty')
    meta = normalize_metadata(metadata)
    missing = [name for name in REQUIRED_METADATA if name not in meta]
    if missing:
        raise ValueError('Missing required report metadata: {0}'.format(
            ', '.join(attributes.camel_case(name) for name in missing)))

    now = now or datetime.datetime.now()
    report_date = meta.get('report_date', now.strftime('%Y%m%d'))
    report_time = meta.get('report_time', now.strftime('%H%M%S'))

    ds = dataset.Dataset()
    # SOP Common
    ds.SpecificCharacterSet = 'ISO_IR 192'
    ds.SOPClassUID = uids.ENCAPSULATED_PDF_STORAGE
    ds.SOPInstanceUID = meta.get('sop_instance_uid') or generate_uid()

    # Patient
    ds.PatientName = meta['patient_name']
    ds.PatientID = meta['patient_id']
    ds.PatientBirthDate = meta.get('patient_birth_date', '')
    ds.PatientSex = meta.get('patient_sex', '')

    # General Study
    ds.StudyInstanceUID = meta['study_instance_uid']
    ds.StudyDate = meta.get('study_date', '')
    ds.StudyTime = meta.get('study_time', '')
    ds.AccessionNumber = meta.get('accession_number', '')
    ds.ReferringPhysicianName = meta.get('referring_physician_name', '')
    ds.StudyID = meta.get('study_id', '')
    if 'study_description' in meta:
        ds.StudyDescription = meta['study_description']

    # Encapsulated Document Series
    ds.Modality = 'DOC'
    ds.SeriesInstanceUID = meta.get('series_instance_uid') or generate_uid()
    ds.SeriesNumber = 1

    # SC Equipment
    ds.ConversionType = 'WSD'
    if 'institution_name' in meta:
        ds.InstitutionName = meta['institution_name']

    # Encapsulated Document
    ds.InstanceNumber = 1
    ds.ContentDate = report_date
    ds.ContentTime = report_time
    ds.AcquisitionDateTime = report_date + report_time
    ds.BurnedInAnnotation = 'YES'
    ds.DocumentTitle = meta.get('document_title', DEFAULT_DOCUMENT_TITLE)
    ds.ConceptNameCodeSequence = []
    ds.MIMETypeOfEncapsulatedDocument = MIME_TYPE_PDF
    ds.EncapsulatedDocument = bytes(pdf_bytes)
    ds.EncapsulatedDocumentLength = len(pdf_bytes)

    for keyword in ('SOPInstanceUID', 'SeriesInstanceUID', 'StudyInstanceUID'):
        if len(ds.data_element(keyword).value) > MAX_UID_LENGTH:
            raise ValueError('{0} is longer than {1} characters'.format(
                keyword, MAX_UID_LENGTH))
    return ds
