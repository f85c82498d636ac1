# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
PACS client facade.

:class:`PACSClient` is the only class most applications need. It exposes
verification, study query and report storage as plain method calls that
return result named tuples::

    client = create_pacs_client({'host': 'pacs.local', 'port': 11112,
                                 'aeTitle': 'SERENVALE', 'remoteAeTitle': 'PACS'})
    result = client.query_studies({'patientName': 'DOE*', 'modality': 'CT'})
    for study in result.studies:
        print(study.for_display())

Every operation opens its own association, performs a single DIMSE exchange
and closes the association. Operations use a snapshot of the configuration
taken when they start, so :meth:`PACSClient.update_config` never affects an
operation that is already running.

Only :meth:`PACSClient.test_connection` raises on connection failures.
Other operations report failures in their results.
"""

import collections
import logging

from . import applicationentity
from . import attributes
from . import config
from . import documents
from . import exceptions
from . import sopclass
from . import statuses
from . import uids

LOGGER = logging.getLogger('pacsnet.client')

EchoResult = collections.namedtuple('EchoResult', ['success', 'status', 'error'])
"""Result of C-ECHO: success flag, :class:`~pacsnet.statuses.Status` (``None`` if no
response was received) and error message"""

FindResult = collections.namedtuple(
    'FindResult', ['success', 'studies', 'total_results', 'error', 'status'])
"""Result of study query. ``studies`` holds all studies parsed before a failure"""

StoreResult = collections.namedtuple(
    'StoreResult', ['success', 'error', 'sop_instance_uid', 'status'])
"""Result of C-STORE. Warning statuses count as success"""


class PACSClient(object):
    """DICOM client for a single remote PACS.

    :param pacs_config: connection configuration
    :type pacs_config: config.PACSConfig
    """

    def __init__(self, pacs_config):
        self._config = pacs_config
        self._connected = False

    def __repr__(self):
        return 'PACSClient({0!r})'.format(self._config)

    def get_config(self):
        """Returns current configuration"""
        return self._config

    def update_config(self, **changes):
        """Replaces configuration fields.

        Client is considered disconnected after the change. Operations that
        are already running keep using the previous configuration.

        :raises exceptions.ConfigurationError: if new configuration is invalid
        :return: new configuration
        """
        self._config = self._config.replace(**changes)
        self._connected = False
        LOGGER.debug('Configuration updated: %r', self._config)
        return self._config

    def is_connected(self):
        """``True`` if last verification succeeded.

        Connection is not kept open between operations, flag only reflects
        the result of the last :meth:`test_connection`/:meth:`echo`.
        """
        return self._connected

    def disconnect(self):
        """Resets connected flag. No association is kept open between calls."""
        self._connected = False

    def test_connection(self):
        """Verifies connection to PACS with C-ECHO.

        :raises exceptions.ConnectionError: if association could not be established
        :raises exceptions.TimeoutError: if PACS did not respond in time
        :return: ``True`` if C-ECHO status is success
        """
        pacs_config = self._config
        self._connected = False
        status = self._echo(pacs_config)
        self._connected = status.is_success
        if not self._connected:
            LOGGER.warning('%s', statuses.ServiceStatusFailure('C-ECHO', status))
        return self._connected

    def echo(self):
        """Same as :meth:`test_connection`, but never raises.

        :rtype: EchoResult
        """
        pacs_config = self._config
        try:
            status = self._echo(pacs_config)
        except (exceptions.PACSError, ValueError) as exc:
            self._connected = False
            LOGGER.error('C-ECHO to %s failed: %s', pacs_config.remote_ae_title, exc)
            return EchoResult(False, None, str(exc))
        self._connected = status.is_success
        if status.is_success:
            return EchoResult(True, status, None)
        return EchoResult(False, status, str(statuses.ServiceStatusFailure('C-ECHO', status)))

    def query_studies(self, params=None, cancel=None):
        """Searches studies with Study Root C-FIND.

        Returned studies are filtered locally with the same matching rules,
        so that PACS that ignores some of the keys can not return studies
        that do not match.

        :param params: query parameters (mapping with camelCase/snake_case keys
                       or :class:`~pacsnet.attributes.StudyQueryParams`)
        :param cancel: optional cancellation flag (object with ``is_set()``
                       method). Once set, query is cancelled and studies
                       received so far are returned.
        :rtype: FindResult
        """
        pacs_config = self._config
        if params is None:
            params = attributes.StudyQueryParams()
        elif not isinstance(params, attributes.StudyQueryParams):
            params = attributes.StudyQueryParams.from_dict(params)

        studies = []
        status = None
        try:
            identifier = attributes.build_query_dataset(params)
            with self._association(pacs_config, pacs_config.called_find_ae_title,
                                   sopclass.qr_find_scu) as assoc:
                find = assoc.get_scu(uids.STUDY_ROOT_FIND_SOP_CLASS)
                for data_set, status in find(identifier, assoc.next_message_id(),
                                             cancel=cancel):
                    if data_set is None:
                        continue
                    study = attributes.DicomStudy.from_dataset(data_set)
                    if study.matches(params):
                        studies.append(study)
                    else:
                        LOGGER.debug('Study %s does not match query, skipped',
                                     study.study_instance_uid)
        except (exceptions.PACSError, ValueError) as exc:
            LOGGER.error('C-FIND to %s failed: %s', pacs_config.called_find_ae_title, exc)
            return FindResult(False, studies, len(studies), str(exc), status)

        if status is not None and not (status.is_pending or status.is_success or
                                       status.is_warning or status == statuses.CANCEL):
            failure = statuses.ServiceStatusFailure('C-FIND', status)
            LOGGER.error('%s', failure)
            return FindResult(False, studies, len(studies), str(failure), status)
        return FindResult(True, studies, len(studies), None, status)

    def store_report_pdf(self, pdf_bytes, metadata):
        """Stores PDF report as Encapsulated PDF instance.

        :param pdf_bytes: PDF document
        :param metadata: report metadata (see
                         :func:`~pacsnet.documents.build_encapsulated_pdf`)
        :rtype: StoreResult
        """
        pacs_config = self._config
        sop_instance_uid = None
        try:
            ds = documents.build_encapsulated_pdf(pdf_bytes, metadata)
            sop_instance_uid = ds.SOPInstanceUID
            with self._association(pacs_config, pacs_config.called_store_ae_title,
                                   sopclass.storage_scu,
                                   [uids.ENCAPSULATED_PDF_STORAGE]) as assoc:
                store = assoc.get_scu(uids.ENCAPSULATED_PDF_STORAGE)
                status = store(ds, assoc.next_message_id())
        except (exceptions.PACSError, ValueError) as exc:
            LOGGER.error('C-STORE to %s failed: %s', pacs_config.called_store_ae_title, exc)
            return StoreResult(False, str(exc), sop_instance_uid, None)

        if status.is_success or status.is_warning:
            return StoreResult(True, None, sop_instance_uid, status)
        failure = statuses.ServiceStatusFailure('C-STORE', status)
        LOGGER.error('%s', failure)
        return StoreResult(False, str(failure), sop_instance_uid, status)

    def _echo(self, pacs_config):
        with self._association(pacs_config, pacs_config.remote_ae_title,
                               sopclass.verification_scu) as assoc:
            echo = assoc.get_scu(uids.VERIFICATION_SOP_CLASS)
            return echo(assoc.next_message_id())

    @staticmethod
    def _association(pacs_config, called_ae_title, service, sop_classes=None):
        ae = applicationentity.ClientAE(pacs_config.local_ae_title,
                                        max_pdu_length=pacs_config.max_pdu_length,
                                        timeout=pacs_config.timeout)
        ae.add_scu(service, sop_classes)
        return ae.request_association(pacs_config.remote_ae(called_ae_title))


def create_pacs_client(settings):
    """Creates client from persistence layer settings record

    :param settings: settings record, see :meth:`~pacsnet.config.PACSConfig.from_settings`
    :raises exceptions.ConfigurationError: if record is incomplete or invalid
    :rtype: PACSClient
    """
    return PACSClient(config.PACSConfig.from_settings(settings))
