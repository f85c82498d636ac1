# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
#

"""
This module implements the DUL service provider, allowing a DUL service user to
send and receive DUL messages (PDUs). The User and Provider talk to each
other using a TCP socket.

Provider is synchronous: PDUs are sent right away and incoming PDUs are read
only when the service user asks for the next indication. Every socket
operation is bounded by an operation deadline (:class:`Timer`), so that
connect, each PDU read and the operation as a whole can not take longer than
configured timeout.

Underlying logic of the service is implemented via state machine that is
described in :doc:`fsm`.

In most of the cases you would not need to access
:class:`~pacsnet.dulprovider.DULServiceProvider` directly, but rather would
use :class:`~pacsnet.asceprovider.AssociationRequester`.
"""

import collections
import logging
import socket
import time

from . import exceptions
from . import fsm
from . import pdu

LOGGER = logging.getLogger('pacsnet.dulprovider')

RECV_BUFFER_SIZE = 65536

CANCEL_POLL_INTERVAL = 0.05
"""Seconds between checks of cancellation flag while waiting for a PDU"""


class Timer(object):
    """A small helper timer class that tracks operation deadline

    :ivar max_seconds: timer duration
    """

    def __init__(self, max_seconds):
        # type: (float) -> None
        self.max_seconds = max_seconds
        self._start_time = None

    def start(self):
        """Sets a timer"""
        self._start_time = time.monotonic()

    def remaining(self):
        # type: () -> float
        """Seconds left until timer expires (full duration if not started)"""
        if self._start_time is None:
            return self.max_seconds
        return self.max_seconds - (time.monotonic() - self._start_time)


class DULServiceProvider(object):
    """Implements DUL service (requestor side).

    :ivar primitive: current PDU
    :ivar max_pdu_length: maximum PDU length for incoming P-DATA-TF PDUs
    :ivar to_service_user: incoming indications (PDUs and tuples of
                           DIMSE message and presentation context ID)
    :ivar dul_socket: socket, that service uses
    :ivar timer: operation deadline
    """

    def __init__(self, timeout, max_pdu_length=65536):
        # type: (float, int) -> None
        """Initializes DUL service.

        :param timeout: operation timeout in seconds
        :param max_pdu_length: maximum length of incoming P-DATA-TF PDUs
                               (0 means no limit)
        """
        self.primitive = None
        self.max_pdu_length = max_pdu_length
        self.to_service_user = collections.deque()
        self.dul_socket = None
        self.called_presentation_address = None
        self.timer = Timer(timeout)
        self.raw_pdu = b''
        self.state_machine = fsm.StateMachine(self)

    @property
    def state(self):
        """Current association state"""
        return self.state_machine.current_state

    @property
    def accepted_contexts(self):
        """Accepted presentation contexts in the current association"""
        return self.state_machine.accepted_contexts

    @accepted_contexts.setter
    def accepted_contexts(self, value):
        self.state_machine.accepted_contexts = value

    def connect(self, address, assoc_rq):
        """Opens transport connection and sends A-ASSOCIATE-RQ.

        Operation timer is started here.

        :param address: tuple of host and port
        :param assoc_rq: A-ASSOCIATE-RQ PDU
        :raises exceptions.TimeoutError: if connection was not established in time
        :raises exceptions.ConnectionError: if connection failed
        """
        self.timer.start()
        self.called_presentation_address = address
        self.primitive = assoc_rq
        self._handle(fsm.Events.ASSOCIATE_REQUEST)
        self._handle(fsm.Events.TRANSPORT_CONNECTED)

    def send(self, primitive):
        """Sends PDU, triggering corresponding state machine event.

        :param primitive: outgoing PDU (P-DATA-TF, A-RELEASE-RQ or A-ABORT)
        """
        self.primitive = primitive
        self._handle(fsm.REQUEST_EVENTS[primitive.pdu_type])

    def receive(self, cancel=None):
        """Reads incoming PDUs until indication for service user is available

        :param cancel: optional cancellation flag (object with ``is_set()``),
                       polled every :data:`CANCEL_POLL_INTERVAL` seconds
                       while waiting for data
        :return: PDU instance or a tuple containing DIMSE Message and Presentation Context ID.
                 ``None`` if `cancel` was set before indication arrived.
        :raises exceptions.TimeoutError: if operation timeout has expired
        :raises exceptions.ConnectionError: on transport errors or invalid PDUs
        """
        while not self.to_service_user:
            if self.state in fsm.TERMINAL_STATES:
                raise exceptions.AssociationError(
                    'Association is not active ({0})'.format(self.state.value))
            if not self._read_pdu(cancel):
                return None
        return self.to_service_user.popleft()

    def abort(self):
        """Aborts association (best-effort A-ABORT) and closes the transport.

        Does nothing if association is already closed.
        """
        self.primitive = pdu.AAbortPDU(source=0, reason_diag=0)
        self.state_machine.action(fsm.Events.ABORT_REQUEST)

    # transport operations used by state machine actions

    def open_transport(self):
        """Opens TCP connection to called presentation address"""
        LOGGER.debug('Connecting to %s:%s', *self.called_presentation_address)
        self.dul_socket = socket.create_connection(self.called_presentation_address,
                                                   timeout=self._remaining())

    def send_pdu(self, primitive):
        """Writes PDU into the socket"""
        LOGGER.debug('Sending %s', primitive)
        self.dul_socket.settimeout(self._remaining())
        self.dul_socket.sendall(primitive.encode())

    def send_abort(self, abort_pdu):
        """Sends A-ABORT PDU, ignoring any transport errors"""
        if self.dul_socket is None:
            return
        try:
            self.dul_socket.settimeout(max(self.timer.remaining(), 0.1))
            self.dul_socket.sendall(abort_pdu.encode())
        except OSError as exc:
            LOGGER.debug('Failed to send A-ABORT: %s', exc)

    def close_transport(self):
        """Closes TCP connection"""
        if self.dul_socket is None:
            return
        try:
            self.dul_socket.close()
        finally:
            self.dul_socket = None
            self.raw_pdu = b''

    def _remaining(self):
        remaining = self.timer.remaining()
        if remaining <= 0:
            raise socket.timeout('operation timed out')
        return remaining

    def _handle(self, event):
        """Runs state machine action, translating transport errors"""
        try:
            self.state_machine.action(event)
        except socket.timeout:
            self.state_machine.action(fsm.Events.TIMEOUT)
            raise exceptions.TimeoutError(
                'Timed out after {0} seconds ({1})'.format(self.timer.max_seconds, event.value))
        except OSError as exc:
            self.state_machine.action(fsm.Events.TRANSPORT_CLOSED)
            raise exceptions.ConnectionError(
                'Transport error ({0}): {1}'.format(event.value, exc))

    def _read_pdu(self, cancel=None):
        """Reads and handles next PDU

        :return: ``False`` if waiting was cancelled, ``True`` otherwise
        """
        raw_pdu = self._process_incoming()
        while raw_pdu is None:
            if not self._handle_recv(cancel):
                return False
            raw_pdu = self._process_incoming()

        try:
            self.primitive = pdu.decode_pdu(raw_pdu)
        except exceptions.PDUProcessingError:
            LOGGER.warning('Invalid PDU received, aborting association')
            self.state_machine.action(fsm.Events.INVALID_PDU)
            raise
        LOGGER.debug('Received %s', self.primitive)
        self._handle(fsm.PDU_EVENTS[self.primitive.pdu_type])
        return True

    def _handle_recv(self, cancel=None):
        """Receives next chunk of data into the buffer

        With `cancel` provided socket is read in short slices and flag is
        checked before each of them.

        :return: ``False`` if `cancel` was set, ``True`` once data arrived
        """
        try:
            while True:
                wait = self._remaining()
                if cancel is not None:
                    if cancel.is_set():
                        LOGGER.debug('Waiting for PDU cancelled')
                        return False
                    wait = min(wait, CANCEL_POLL_INTERVAL)
                self.dul_socket.settimeout(wait)
                try:
                    data = self.dul_socket.recv(RECV_BUFFER_SIZE)
                    break
                except socket.timeout:
                    if cancel is None or self.timer.remaining() <= 0:
                        raise
        except socket.timeout:
            self.state_machine.action(fsm.Events.TIMEOUT)
            raise exceptions.TimeoutError(
                'Timed out after {0} seconds waiting for PDU'.format(self.timer.max_seconds))
        except OSError as exc:
            self.state_machine.action(fsm.Events.TRANSPORT_CLOSED)
            raise exceptions.ConnectionError('Transport error: {0}'.format(exc))

        if not data:
            # Remote port has been closed
            self.state_machine.action(fsm.Events.TRANSPORT_CLOSED)
            raise exceptions.AssociationAbortedError(
                2, 0, 'Connection closed by remote side')
        self.raw_pdu += data
        return True

    def _process_incoming(self):
        """Extracts next complete PDU from the receive buffer

        :return: raw PDU or ``None`` if PDU is not complete yet
        """
        if len(self.raw_pdu) < pdu.PDU_HEADER.size:
            return None

        pdu_type, _, length = pdu.PDU_HEADER.unpack(self.raw_pdu[:pdu.PDU_HEADER.size])
        limit = self._length_limit(pdu_type)
        if pdu_type not in fsm.PDU_EVENTS or (limit and length > limit):
            self.state_machine.action(fsm.Events.INVALID_PDU)
            if pdu_type not in fsm.PDU_EVENTS:
                raise exceptions.PDUProcessingError(
                    'Unknown PDU type: 0x{0:02X}'.format(pdu_type))
            raise exceptions.PDUProcessingError(
                'PDU length {0} exceeds maximum of {1}'.format(length, limit))

        full_length = length + pdu.PDU_HEADER.size
        if len(self.raw_pdu) < full_length:
            return None

        raw_pdu = self.raw_pdu[:full_length]
        self.raw_pdu = self.raw_pdu[full_length:]
        return raw_pdu

    def _length_limit(self, pdu_type):
        if pdu_type == pdu.PDataTfPDU.pdu_type:
            return self.max_pdu_length
        return pdu.MAX_CONTROL_PDU_LENGTH
