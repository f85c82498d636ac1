# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.

"""
Module contains all exception class that are used in this package.

PACSError serves as base exception class.

The class hierarchy for exceptions is:

| Exception
| +-- PACSError
|      +-- ConfigurationError
|      +-- ConnectionError
|           +-- PDUProcessingError
|           +-- ClassNotSupportedError
|           +-- AssociationError
|                +-- AssociationRejectedError
|                +-- AssociationReleasedError
|                +-- AssociationAbortedError
|      +-- TimeoutError
|      +-- MalformedDatasetError
|      +-- DIMSEProcessingError

.. note::

    ``ConnectionError`` and ``TimeoutError`` intentionally shadow the built-in
    exceptions of the same name inside this module. Always refer to them
    as ``exceptions.ConnectionError`` and ``exceptions.TimeoutError``.

Non-success DIMSE statuses are not exceptions, see
:class:`~pacsnet.statuses.ServiceStatusFailure`.
"""


class PACSError(Exception):
    """Base class for all exceptions raised by this package."""


class ConfigurationError(PACSError):
    """Raised when PACS configuration is invalid.

    Detected before any network I/O takes place: AE title length, port range,
    missing host and similar.
    """


class ConnectionError(PACSError):  # pylint: disable=redefined-builtin
    """Transport or association negotiation failure.

    Connection refused or reset, association rejected or aborted, malformed
    or unexpected PDU. Never retried by the library.
    """


class TimeoutError(PACSError):  # pylint: disable=redefined-builtin
    """Raised if any phase of an operation exceeded configured timeout."""


class PDUProcessingError(ConnectionError):
    """Raised when error occurs while processing PDU.

    Can be raised, for example, when PDU failed to decode from data or declared
    PDU length exceeds allowed maximum.
    """


class ClassNotSupportedError(ConnectionError):
    """Raised when remote application entity did not accept any presentation
    context for requested SOP Class."""


class MalformedDatasetError(PACSError):
    """Raised when dataset could not be decoded.

    :ivar partial: dataset with elements that were decoded before the fault
                   (may be empty or ``None``)
    """

    def __init__(self, message, partial=None):
        super(MalformedDatasetError, self).__init__(message)
        self.partial = partial


class DIMSEProcessingError(PACSError):
    """Raised when error occurs while processing DIMSE.

    Can be raised, for example, when incoming message can not be re-assembled
    from fragments or response does not correspond to the request.
    """


class AssociationError(ConnectionError):
    """Base association error.

    This error shall not be raised directly, instead its more specialized
    sub-classes are raised in appropriate situations.
    """


class AssociationRejectedError(AssociationError):
    """Raised when remote application entity has rejected
    requested association.

    Exception has 3 instance attributes to indicate why association was
    rejected:

        * Result,
        * Source,
        * Reason/Diag

    as described in PS 3.8 (9.3.4 A-ASSOCIATE-RJ PDU STRUCTURE).

    :param result: 1 - rejected-permanent or  2 - rejected-transient
    :param source: * 1 - DICOM UL service-user
                   * 2 - DICOM UL service-provider (ACSE related function)
                   * 3 - DICOM UL service-provider (Presentation related function)
    :param diagnostic: reason, meaning depends on the source. See
                       :data:`REJECT_REASONS`
    """

    REJECT_SOURCES = {
        1: 'service-user',
        2: 'service-provider (ACSE)',
        3: 'service-provider (presentation)'
    }

    REJECT_REASONS = {
        (1, 1): 'no-reason-given',
        (1, 2): 'application-context-name-not-supported',
        (1, 3): 'calling-AE-title-not-recognized',
        (1, 7): 'called-AE-title-not-recognized',
        (2, 1): 'no-reason-given',
        (2, 2): 'protocol-version-not-supported',
        (3, 1): 'temporary-congestion',
        (3, 2): 'local-limit-exceeded'
    }

    def __init__(self, result, source, diagnostic, *args):
        if not args:
            args = ('Association rejected ({0}): {1}, source: {2}'.format(
                'permanent' if result == 1 else 'transient',
                self.REJECT_REASONS.get((source, diagnostic),
                                        'reason {0}'.format(diagnostic)),
                self.REJECT_SOURCES.get(source, source)),)
        super(AssociationRejectedError, self).__init__(*args)
        self.result = result
        self.source = source
        self.diagnostic = diagnostic


class AssociationReleasedError(AssociationError):
    """Raised when remote application entity has released active association."""


class AssociationAbortedError(AssociationError):
    """Raised when association was aborted, either by the remote application
    entity or by the service provider (for example, transport connection
    was closed).

    :param source: 0 - service-user, 2 - service-provider
    :param reason_diag: abort reason (see :class:`~pacsnet.pdu.AAbortPDU`)
    """

    def __init__(self, source, reason_diag, *args):
        if not args:
            args = ('Association aborted (source: {0}, reason: {1})'.format(
                source, reason_diag),)
        super(AssociationAbortedError, self).__init__(*args)
        self.source = source
        self.reason_diag = reason_diag
