# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
DIMSE status codes (PS 3.7 Annex C) and helpers for interpreting them.

Service classes in :doc:`sopclass` wrap every response status into
:class:`Status`. Non-success statuses are an expected outcome of a DIMSE
operation and are returned to the caller as
:class:`ServiceStatusFailure` values, never raised.
"""

import collections

SUCCESS = 0x0000
CANCEL = 0xFE00
PENDING = 0xFF00
PENDING_WARNING = 0xFF01

# Failure
REFUSED_SOP_CLASS_NOT_SUPPORTED = 0x0122
DUPLICATE_SOP_INSTANCE = 0x0111
PROCESSING_FAILURE = 0x0110
NO_SUCH_SOP_CLASS = 0x0118
OUT_OF_RESOURCES = 0xA700
C_FIND_OUT_OF_RESOURCES = 0xA700
C_FIND_IDENTIFIER_DOES_NOT_MATCH_SOP_CLASS = 0xA900
C_STORE_DATA_SET_DOES_NOT_MATCH_SOP_CLASS = 0xA900
C_STORE_CANNOT_UNDERSTAND = 0xC000
C_FIND_UNABLE_TO_PROCESS = 0xC000

# Warning
C_STORE_COERCION_OF_DATA_ELEMENTS = 0xB000
C_STORE_ELEMENT_DISCARDED = 0xB006
C_STORE_DATA_SET_DOES_NOT_MATCH_SOP_CLASS_WARNING = 0xB007

DESCRIPTIONS = {
    SUCCESS: 'Success',
    CANCEL: 'Matching terminated due to Cancel request',
    PENDING: 'Matches are continuing',
    PENDING_WARNING: 'Matches are continuing, optional keys not supported',
    REFUSED_SOP_CLASS_NOT_SUPPORTED: 'Refused: SOP Class not supported',
    DUPLICATE_SOP_INSTANCE: 'Duplicate SOP Instance',
    PROCESSING_FAILURE: 'Processing failure',
    NO_SUCH_SOP_CLASS: 'No such SOP Class',
    OUT_OF_RESOURCES: 'Refused: Out of resources',
    C_STORE_DATA_SET_DOES_NOT_MATCH_SOP_CLASS: 'Data Set does not match SOP Class',
    C_STORE_CANNOT_UNDERSTAND: 'Cannot understand',
    C_STORE_COERCION_OF_DATA_ELEMENTS: 'Coercion of data elements',
    C_STORE_ELEMENT_DISCARDED: 'Elements discarded',
    C_STORE_DATA_SET_DOES_NOT_MATCH_SOP_CLASS_WARNING: 'Data Set does not match SOP Class',
}


class Status(int):
    """DIMSE status code.

    Behaves as a plain integer, but knows its category and description.

    :ivar error_comment: optional Error Comment (0000,0902) that came with the
                         response
    """

    def __new__(cls, value, error_comment=None):
        instance = super(Status, cls).__new__(cls, value)
        instance.error_comment = error_comment
        return instance

    @property
    def status_type(self):
        """Status category: ``Success``, ``Pending``, ``Cancel``,
        ``Warning`` or ``Failure``."""
        if self == SUCCESS:
            return 'Success'
        if self in (PENDING, PENDING_WARNING):
            return 'Pending'
        if self == CANCEL:
            return 'Cancel'
        if self == 0x0001 or (self & 0xF000) == 0xB000 or self == 0x0107 or self == 0x0116:
            return 'Warning'
        return 'Failure'

    @property
    def is_success(self):
        return self.status_type == 'Success'

    @property
    def is_pending(self):
        return self.status_type == 'Pending'

    @property
    def is_warning(self):
        return self.status_type == 'Warning'

    @property
    def is_failure(self):
        return self.status_type == 'Failure'

    @property
    def description(self):
        """Human readable description of the status"""
        try:
            return DESCRIPTIONS[self]
        except KeyError:
            if (self & 0xF000) == 0xA000:
                return 'Refused'
            if (self & 0xF000) == 0xC000:
                return 'Unable to process'
            return self.status_type

    def __str__(self):
        text = '0x{0:04X} ({1})'.format(int(self), self.description)
        if self.error_comment:
            text += ': ' + self.error_comment
        return text

    def __repr__(self):
        return 'Status(0x{0:04X})'.format(int(self))


class ServiceStatusFailure(collections.namedtuple('ServiceStatusFailure',
                                                  ['operation', 'status'])):
    """Non-success DIMSE response, returned as data.

    :ivar operation: DIMSE operation name (``C-ECHO``, ``C-FIND``, ``C-STORE``)
    :ivar status: :class:`Status` received from the peer
    """
    __slots__ = ()

    @property
    def error_comment(self):
        return self.status.error_comment

    def __str__(self):
        return '{0} failed with status {1}'.format(self.operation, self.status)
