# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
Minimal in-process PACS used by the client tests.

Server accepts connections on a random local port, each connection is
handled in its own thread. Behaviour is controlled by attributes of
:class:`FakePACS` that tests set before running an operation::

    with fakepacs.FakePACS() as pacs:
        pacs.find_results = [study1, study2]
        client = PACSClient(PACSConfig('SERENVALE', 'PACS', '127.0.0.1', pacs.port))
        client.query_studies({'patientName': 'DOE*'})
"""

import logging
import socket
import threading
import time

from pacsnet import dimsemessages
from pacsnet import dsutils
from pacsnet import exceptions
from pacsnet import fsm
from pacsnet import pdu
from pacsnet import statuses
from pacsnet import uids
from pacsnet import userdataitems

LOGGER = logging.getLogger('pacsnet.tests.fakepacs')


class FakePACS(object):
    """Scripted Storage/Find/Verification SCP.

    :ivar sop_classes: abstract syntaxes that are accepted
    :ivar transfer_syntax: preferred transfer syntax, first proposed one is
                           used if it was not proposed
    :ivar reject: ``(result, source, reason)`` to reject association with
    :ivar association_delay: seconds to wait before answering A-ASSOCIATE-RQ
    :ivar response_delay: seconds to wait before each DIMSE response
    :ivar abort_on: command field of request that is answered with A-ABORT
    :ivar echo_status: C-ECHO response status
    :ivar find_results: datasets that are sent as pending C-FIND responses
    :ivar find_status: final C-FIND response status
    :ivar after_find_response: optional callable, called with number of
                               pending C-FIND responses sent so far
    :ivar store_status: C-STORE response status
    :ivar max_pdu_length: maximum PDU length announced in A-ASSOCIATE-AC
    :ivar associate_requests: received A-ASSOCIATE-RQ PDUs
    :ivar requests: received DIMSE requests
    :ivar stored: datasets received with C-STORE
    :ivar released: number of associations released by the client
    """

    def __init__(self):
        self.sop_classes = {uids.VERIFICATION_SOP_CLASS, uids.STUDY_ROOT_FIND_SOP_CLASS,
                            uids.ENCAPSULATED_PDF_STORAGE}
        self.transfer_syntax = uids.IMPLICIT_VR_LITTLE_ENDIAN
        self.reject = None
        self.association_delay = 0
        self.response_delay = 0
        self.abort_on = None
        self.echo_status = statuses.SUCCESS
        self.find_results = []
        self.find_status = statuses.SUCCESS
        self.after_find_response = None
        self.store_status = statuses.SUCCESS
        self.max_pdu_length = 16384

        self.associate_requests = []
        self.requests = []
        self.stored = []
        self.released = 0
        self.lock = threading.Lock()

        self._server_socket = None
        self._running = False
        self._threads = []

    @property
    def port(self):
        return self._server_socket.getsockname()[1]

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def start(self):
        self._server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server_socket.bind(('127.0.0.1', 0))
        self._server_socket.listen(5)
        self._server_socket.settimeout(0.2)
        self._running = True
        thread = threading.Thread(target=self._accept_loop, daemon=True)
        thread.start()
        self._threads.append(thread)

    def stop(self):
        self._running = False
        for thread in self._threads:
            thread.join(5)
        self._server_socket.close()

    def _accept_loop(self):
        while self._running:
            try:
                client_socket, _ = self._server_socket.accept()
            except socket.timeout:
                continue
            thread = threading.Thread(target=self._serve, args=(client_socket,), daemon=True)
            thread.start()
            self._threads.append(thread)

    def _serve(self, client_socket):
        client_socket.settimeout(5)
        try:
            Connection(self, client_socket).run()
        except (OSError, exceptions.PACSError) as exc:
            LOGGER.debug('Connection closed: %s', exc)
        finally:
            client_socket.close()


class Connection(object):
    """Single association on the server side"""

    def __init__(self, pacs, client_socket):
        self.pacs = pacs
        self.socket = client_socket
        self.accepted = {}
        self.peer_max_pdu_length = 16384

    def send(self, pdu_):
        self.socket.sendall(pdu_.encode())

    def read_pdu(self):
        header = self._read(pdu.PDU_HEADER.size)
        if header is None:
            return None
        _, _, length = pdu.PDU_HEADER.unpack(header)
        body = self._read(length)
        if body is None:
            return None
        return pdu.decode_pdu(header + body)

    def _read(self, size):
        data = b''
        while len(data) < size:
            chunk = self.socket.recv(size - len(data))
            if not chunk:
                return None
            data += chunk
        return data

    def run(self):
        assoc_rq = self.read_pdu()
        self.pacs.associate_requests.append(assoc_rq)
        time.sleep(self.pacs.association_delay)
        if self.pacs.reject:
            self.send(pdu.AAssociateRjPDU(*self.pacs.reject))
            return
        self.send(self.associate_ac(assoc_rq))

        decoder = None
        while True:
            received = self.read_pdu()
            if received is None or received.pdu_type == pdu.AAbortPDU.pdu_type:
                return
            if received.pdu_type == pdu.AReleaseRqPDU.pdu_type:
                with self.pacs.lock:
                    self.pacs.released += 1
                self.send(pdu.AReleaseRpPDU())
                return
            if decoder is None:
                decoder = fsm.DIMSEDecoder(self.accepted)
            decoder.process(received)
            if not decoder.receiving:
                msg, pc_id = decoder.msg, decoder.pc_id
                decoder = None
                self.pacs.requests.append(msg)
                if msg.command_field == self.pacs.abort_on:
                    self.send(pdu.AAbortPDU(2, 0))
                    return
                self.dispatch(msg, pc_id)

    def associate_ac(self, assoc_rq):
        if assoc_rq.max_pdu_length:
            self.peer_max_pdu_length = assoc_rq.max_pdu_length
        items = [pdu.ApplicationContextItem(uids.APPLICATION_CONTEXT_NAME)]
        for ctx in assoc_rq.presentation_context_items:
            proposed = [ts.name for ts in ctx.ts_sub_items]
            if ctx.abs_sub_item.name not in self.pacs.sop_classes:
                items.append(pdu.PresentationContextItemAC(
                    ctx.context_id, 3, pdu.TransferSyntaxSubItem('')))
                continue
            ts = self.pacs.transfer_syntax if self.pacs.transfer_syntax in proposed \
                else proposed[0]
            self.accepted[ctx.context_id] = ts
            items.append(pdu.PresentationContextItemAC(
                ctx.context_id, 0, pdu.TransferSyntaxSubItem(ts)))
        items.append(pdu.UserInformationItem([
            userdataitems.MaximumLengthSubItem(self.pacs.max_pdu_length),
            userdataitems.ImplementationClassUIDSubItem('1.2.826.0.1.3680043.9.9999'),
        ]))
        return pdu.AAssociateAcPDU(assoc_rq.called_ae_title, assoc_rq.calling_ae_title, items)

    def respond(self, msg, pc_id):
        time.sleep(self.pacs.response_delay)
        for p_data in msg.encode(pc_id, self.peer_max_pdu_length):
            self.send(p_data)

    def dispatch(self, msg, pc_id):
        if isinstance(msg, dimsemessages.CEchoRQMessage):
            rsp = dimsemessages.CEchoRSPMessage()
            rsp.sop_class_uid = msg.sop_class_uid
            rsp.message_id_being_responded_to = msg.message_id
            rsp.status = self.pacs.echo_status
            self.respond(rsp, pc_id)
        elif isinstance(msg, dimsemessages.CStoreRQMessage):
            self.pacs.stored.append(dsutils.decode_for(msg.data_set, self.accepted[pc_id]))
            rsp = dimsemessages.CStoreRSPMessage()
            rsp.sop_class_uid = msg.sop_class_uid
            rsp.message_id_being_responded_to = msg.message_id
            rsp.affected_sop_instance_uid = msg.affected_sop_instance_uid
            rsp.status = self.pacs.store_status
            if self.pacs.store_status == statuses.OUT_OF_RESOURCES:
                rsp.command_set.ErrorComment = 'Disk full'
            self.respond(rsp, pc_id)
        elif isinstance(msg, dimsemessages.CFindRQMessage):
            for sent, ds in enumerate(self.pacs.find_results, 1):
                rsp = self.find_response(msg, statuses.PENDING)
                rsp.data_set = dsutils.encode_for(ds, self.accepted[pc_id])
                self.respond(rsp, pc_id)
                if self.pacs.after_find_response is not None:
                    self.pacs.after_find_response(sent)
            self.respond(self.find_response(msg, self.pacs.find_status), pc_id)

    @staticmethod
    def find_response(msg, status):
        rsp = dimsemessages.CFindRSPMessage()
        rsp.sop_class_uid = msg.sop_class_uid
        rsp.message_id_being_responded_to = msg.message_id
        rsp.status = status
        return rsp
