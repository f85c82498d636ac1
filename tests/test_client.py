# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.

import socket
import threading
import time
import unittest

from pydicom import dataset

import fakepacs

from pacsnet import client
from pacsnet import config
from pacsnet import dimsemessages
from pacsnet import exceptions
from pacsnet import statuses
from pacsnet import uids
from pacsnet import userdataitems

PDF = b'%PDF-1.4\n1 0 obj\n<<>>\nendobj\n%%EOF\n'

METADATA = {
    'patientName': 'DOE^JOHN',
    'patientId': '12345',
    'studyInstanceUID': '1.2.3.4',
    'studyDate': '20241113',
}


def study(uid, name='DOE^JOHN', modalities='CT', study_date='20241113'):
    ds = dataset.Dataset()
    ds.SpecificCharacterSet = 'ISO_IR 100'
    ds.QueryRetrieveLevel = 'STUDY'
    ds.StudyInstanceUID = uid
    ds.StudyDate = study_date
    ds.PatientName = name
    ds.PatientID = '12345'
    ds.ModalitiesInStudy = modalities
    ds.NumberOfStudyRelatedInstances = '2'
    return ds


class ClientTestBase(unittest.TestCase):
    def setUp(self):
        self.pacs = fakepacs.FakePACS()
        self.pacs.start()
        self.config = config.PACSConfig('SERENVALE', 'PACS', '127.0.0.1', self.pacs.port,
                                        timeout=5)
        self.client = client.PACSClient(self.config)

    def tearDown(self):
        self.pacs.stop()


class TestEcho(ClientTestBase):
    def test_echo(self):
        result = self.client.echo()
        self.assertTrue(result.success)
        self.assertEqual(result.status, statuses.SUCCESS)
        self.assertIsNone(result.error)
        self.assertTrue(self.client.is_connected())
        self.assertEqual(self.pacs.released, 1)

    def test_disconnect(self):
        self.assertTrue(self.client.test_connection())
        self.client.disconnect()
        self.assertFalse(self.client.is_connected())
        self.assertEqual(len(self.pacs.associate_requests), 1)

    def test_associate_request(self):
        self.client.test_connection()
        assoc_rq = self.pacs.associate_requests[0]
        self.assertEqual(assoc_rq.called_ae_title, 'PACS')
        self.assertEqual(assoc_rq.calling_ae_title, 'SERENVALE')
        context, = assoc_rq.presentation_context_items
        self.assertEqual(context.context_id, 1)
        self.assertEqual(context.abs_sub_item.name, uids.VERIFICATION_SOP_CLASS)
        self.assertEqual([ts.name for ts in context.ts_sub_items],
                         list(uids.SUPPORTED_TRANSFER_SYNTAXES))
        self.assertEqual(assoc_rq.max_pdu_length, config.DEFAULT_MAX_PDU_LENGTH)
        request, = self.pacs.requests
        self.assertEqual(request.message_id, 1)

    def test_user_identity(self):
        self.client.update_config(username='user', password='secret')
        self.assertTrue(self.client.test_connection())
        identity = self.pacs.associate_requests[0].user_information.user_data[-1]
        self.assertIsInstance(identity, userdataitems.UserIdentityNegotiationSubItem)
        self.assertEqual(identity.primary_field, 'user')
        self.assertEqual(identity.secondary_field, 'secret')

    def test_echo_failure_status(self):
        self.pacs.echo_status = statuses.PROCESSING_FAILURE
        result = self.client.echo()
        self.assertFalse(result.success)
        self.assertIn('0x0110', result.error)
        self.assertFalse(self.client.is_connected())

    def test_association_rejected(self):
        self.pacs.reject = (1, 1, 7)
        with self.assertRaises(exceptions.AssociationRejectedError) as ctx:
            self.client.test_connection()
        self.assertEqual(ctx.exception.result, 1)
        self.assertFalse(self.client.is_connected())
        result = self.client.echo()
        self.assertFalse(result.success)
        self.assertIsNone(result.status)

    def test_no_accepted_contexts(self):
        self.pacs.sop_classes = set()
        with self.assertRaises(exceptions.ClassNotSupportedError):
            self.client.test_connection()

    def test_timeout(self):
        self.pacs.association_delay = 1
        self.client.update_config(timeout=0.1)
        with self.assertRaises(exceptions.TimeoutError):
            self.client.test_connection()

    def test_connect_timeout(self):
        listener = socket.socket()
        listener.bind(('127.0.0.1', 0))
        listener.listen(0)
        # connections that do not fit into accept queue are never answered
        pending = []
        try:
            for _ in range(8):
                sock = socket.socket()
                sock.setblocking(False)
                sock.connect_ex(listener.getsockname())
                pending.append(sock)
            pacs_client = client.PACSClient(
                self.config.replace(port=listener.getsockname()[1], timeout=0.1))
            started = time.monotonic()
            with self.assertRaises(exceptions.TimeoutError):
                pacs_client.test_connection()
            self.assertLess(time.monotonic() - started, 1)
            self.assertFalse(pacs_client.is_connected())
        finally:
            for sock in pending:
                sock.close()
            listener.close()

    def test_connection_refused(self):
        self.pacs.stop()
        with self.assertRaises(exceptions.ConnectionError):
            self.client.test_connection()
        # server is stopped again in tearDown
        self.pacs.start()

    def test_peer_abort(self):
        self.pacs.abort_on = dimsemessages.CEchoRQMessage.command_field
        with self.assertRaises(exceptions.AssociationAbortedError) as ctx:
            self.client.test_connection()
        self.assertEqual(ctx.exception.source, 2)
        self.assertEqual(self.pacs.released, 0)

    def test_concurrent_operations(self):
        results = []

        def run():
            results.append(self.client.echo())

        threads = [threading.Thread(target=run) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
        self.assertEqual(len(results), 4)
        self.assertTrue(all(result.success for result in results))
        self.assertEqual(self.pacs.released, 4)


class TestQueryStudies(ClientTestBase):
    def test_query(self):
        self.pacs.find_results = [study('1.2.3.1'), study('1.2.3.2', modalities=['CT', 'SR'])]
        result = self.client.query_studies({'patientName': 'DOE*'})
        self.assertTrue(result.success)
        self.assertEqual(result.total_results, 2)
        self.assertEqual([s.study_instance_uid for s in result.studies], ['1.2.3.1', '1.2.3.2'])
        self.assertEqual(result.studies[1].modalities, 'CT\\SR')
        self.assertEqual(result.studies[0].number_of_instances, 2)
        self.assertEqual(result.status, statuses.SUCCESS)

        identifier = self.pacs.requests[0]
        self.assertEqual(identifier.sop_class_uid, uids.STUDY_ROOT_FIND_SOP_CLASS)
        self.assertEqual(identifier.priority, dimsemessages.PRIORITY_MEDIUM)

    def test_local_filtering(self):
        self.pacs.find_results = [study('1.2.3.1', modalities='CT'),
                                  study('1.2.3.2', modalities='MR')]
        result = self.client.query_studies({'patientName': 'DOE*', 'modality': 'CT'})
        self.assertTrue(result.success)
        found, = result.studies
        self.assertEqual(found.modalities, 'CT')
        self.assertEqual(found.for_display()['patientName'], 'JOHN DOE')

    def test_empty_result(self):
        result = self.client.query_studies()
        self.assertTrue(result.success)
        self.assertEqual(result.studies, [])
        self.assertEqual(result.total_results, 0)

    def test_cancel(self):
        cancel = threading.Event()

        def cancel_after_second(sent):
            if sent == 2:
                # client has the second response by now
                time.sleep(0.2)
                cancel.set()

        self.pacs.find_results = [study('1.2.3.1'), study('1.2.3.2'), study('1.2.3.3')]
        self.pacs.find_status = statuses.CANCEL
        self.pacs.response_delay = 0.5
        self.pacs.after_find_response = cancel_after_second
        result = self.client.query_studies({'patientName': 'DOE*'}, cancel=cancel)
        self.assertTrue(result.success)
        self.assertEqual([s.study_instance_uid for s in result.studies], ['1.2.3.1', '1.2.3.2'])
        self.assertEqual(self.pacs.released, 1)
        cancel = self.pacs.requests[-1]
        self.assertIsInstance(cancel, dimsemessages.CCancelRQMessage)
        self.assertEqual(cancel.message_id_being_responded_to, 1)

    def test_cancel_while_waiting(self):
        cancel = threading.Event()
        self.pacs.find_results = [study('1.2.3.1')]
        self.pacs.response_delay = 1
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        try:
            result = self.client.query_studies(cancel=cancel)
        finally:
            timer.cancel()
        self.assertTrue(result.success)
        self.assertEqual(result.studies, [])
        self.assertIsNone(result.status)
        # C-CANCEL goes out before the first response arrives
        c_cancel = self.pacs.requests[-1]
        self.assertIsInstance(c_cancel, dimsemessages.CCancelRQMessage)
        self.assertEqual(c_cancel.message_id_being_responded_to, 1)
        self.assertEqual(self.pacs.released, 1)

    def test_cancel_before_query(self):
        cancel = threading.Event()
        cancel.set()
        self.pacs.find_results = [study('1.2.3.1')]
        result = self.client.query_studies(cancel=cancel)
        self.assertTrue(result.success)
        self.assertEqual(result.studies, [])
        self.assertIsInstance(self.pacs.requests[-1], dimsemessages.CCancelRQMessage)

    def test_failure_keeps_partial_results(self):
        self.pacs.find_results = [study('1.2.3.1')]
        self.pacs.find_status = statuses.C_FIND_UNABLE_TO_PROCESS
        result = self.client.query_studies({'patientName': 'DOE*'})
        self.assertFalse(result.success)
        self.assertEqual(len(result.studies), 1)
        self.assertIn('0xC000', result.error)

    def test_explicit_vr(self):
        self.pacs.transfer_syntax = uids.EXPLICIT_VR_LITTLE_ENDIAN
        self.pacs.find_results = [study('1.2.3.1')]
        result = self.client.query_studies({'patientId': '12345'})
        self.assertTrue(result.success)
        self.assertEqual(result.studies[0].patient_id, '12345')

    def test_query_node(self):
        self.client.update_config(query_ae_title='QUERY')
        self.client.query_studies()
        self.assertEqual(self.pacs.associate_requests[0].called_ae_title, 'QUERY')

    def test_timeout(self):
        self.pacs.find_results = [study('1.2.3.1')]
        self.pacs.response_delay = 1
        self.client.update_config(timeout=0.3)
        result = self.client.query_studies()
        self.assertFalse(result.success)
        self.assertIn('Timed out', result.error)
        self.assertEqual(self.pacs.released, 0)

    def test_peer_abort(self):
        self.pacs.abort_on = dimsemessages.CFindRQMessage.command_field
        result = self.client.query_studies()
        self.assertFalse(result.success)
        self.assertEqual(result.studies, [])
        self.assertTrue(result.error)


class TestStoreReport(ClientTestBase):
    def test_store(self):
        result = self.client.store_report_pdf(PDF, METADATA)
        self.assertTrue(result.success)
        self.assertIsNone(result.error)
        self.assertTrue(result.sop_instance_uid.startswith('2.25.'))
        stored, = self.pacs.stored
        self.assertEqual(stored.SOPInstanceUID, result.sop_instance_uid)
        self.assertEqual(stored.SOPClassUID, uids.ENCAPSULATED_PDF_STORAGE)
        self.assertEqual(stored.EncapsulatedDocument[:len(PDF)], PDF)
        request, = self.pacs.requests
        self.assertEqual(request.affected_sop_instance_uid, result.sop_instance_uid)

    def test_store_node(self):
        self.client.update_config(store_ae_title='ARCHIVE')
        self.client.store_report_pdf(PDF, METADATA)
        assoc_rq = self.pacs.associate_requests[0]
        self.assertEqual(assoc_rq.called_ae_title, 'ARCHIVE')
        context, = assoc_rq.presentation_context_items
        self.assertEqual(context.abs_sub_item.name, uids.ENCAPSULATED_PDF_STORAGE)

    def test_out_of_resources(self):
        self.pacs.store_status = statuses.OUT_OF_RESOURCES
        result = self.client.store_report_pdf(PDF, METADATA)
        self.assertFalse(result.success)
        self.assertIn('0xA700', result.error)
        self.assertIn('Disk full', result.error)
        self.assertEqual(result.status, statuses.OUT_OF_RESOURCES)

    def test_warning_is_success(self):
        self.pacs.store_status = statuses.C_STORE_COERCION_OF_DATA_ELEMENTS
        result = self.client.store_report_pdf(PDF, METADATA)
        self.assertTrue(result.success)
        self.assertTrue(result.status.is_warning)

    def test_invalid_metadata(self):
        result = self.client.store_report_pdf(PDF, {'patientName': 'DOE^JOHN'})
        self.assertFalse(result.success)
        self.assertIn('patientId', result.error)
        self.assertEqual(self.pacs.associate_requests, [])

    def test_storage_not_supported(self):
        self.pacs.sop_classes = {uids.VERIFICATION_SOP_CLASS}
        result = self.client.store_report_pdf(PDF, METADATA)
        self.assertFalse(result.success)
        self.assertTrue(result.error)


class TestCreateClient(unittest.TestCase):
    def test_create(self):
        pacs_client = client.create_pacs_client({
            'host': 'pacs.local', 'aeTitle': 'SERENVALE', 'remoteAeTitle': 'PACS'})
        self.assertEqual(pacs_client.get_config().port, config.DEFAULT_PORT)
        self.assertFalse(pacs_client.is_connected())

    def test_invalid_config(self):
        with self.assertRaises(exceptions.ConfigurationError):
            client.create_pacs_client({'host': 'pacs.local', 'aeTitle': 'SERENVALE'})
        with self.assertRaises(exceptions.ConfigurationError):
            client.PACSClient(config.PACSConfig('SERENVALE', 'PACS', 'pacs.local', port=0))

    def test_update_config(self):
        pacs_client = client.PACSClient(config.PACSConfig('SERENVALE', 'PACS', 'pacs.local'))
        with self.assertRaises(exceptions.ConfigurationError):
            pacs_client.update_config(timeout=-1)
        self.assertEqual(pacs_client.get_config().timeout, config.DEFAULT_TIMEOUT)


if __name__ == '__main__':
    unittest.main()
