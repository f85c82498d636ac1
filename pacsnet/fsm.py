# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
#
"""
Implementation of the association requestor side of the OSI Upper Layer
Services (DICOM, Part 8, Section 9.2).

Only the subset of the upper layer state machine that is relevant to a
requesting application entity is implemented::

    Idle -> Connecting -> AssociationRequested -> Established -> Releasing -> Closed

``Aborted`` is reachable from any state other than ``Idle``. Any
``(event, state)`` pair that is not listed in the transition table is a
protocol violation: association is aborted and
:class:`~pacsnet.exceptions.PDUProcessingError` is raised.
"""

import enum
import logging

from typing import Dict, Tuple, Callable  # pylint: disable=unused-import

from . import dimsemessages
from . import dsutils
from . import exceptions
from . import pdu

LOGGER = logging.getLogger('pacsnet.fsm')


class States(enum.Enum):
    """Association states."""

    IDLE = 'Idle'
    """No association, no transport connection"""

    CONNECTING = 'Connecting'
    """Awaiting transport connection opening to complete"""

    ASSOCIATION_REQUESTED = 'AssociationRequested'
    """A-ASSOCIATE-RQ sent, awaiting A-ASSOCIATE-AC or A-ASSOCIATE-RJ PDU"""

    ESTABLISHED = 'Established'
    """Association established and ready for data transfer"""

    RELEASING = 'Releasing'
    """A-RELEASE-RQ sent, awaiting A-RELEASE-RP PDU"""

    CLOSED = 'Closed'
    """Association released, transport connection closed"""

    ABORTED = 'Aborted'
    """Association aborted or rejected, transport connection closed"""


TERMINAL_STATES = frozenset([States.IDLE, States.CLOSED, States.ABORTED])


class Events(enum.Enum):
    """Events enumeration."""

    ASSOCIATE_REQUEST = 'A-ASSOCIATE request (local user)'
    TRANSPORT_CONNECTED = 'Transport connect confirmation'
    ASSOCIATE_AC = 'A-ASSOCIATE-AC PDU'
    ASSOCIATE_RJ = 'A-ASSOCIATE-RJ PDU'
    P_DATA_REQUEST = 'P-DATA request primitive'
    P_DATA_TF = 'P-DATA-TF PDU'
    RELEASE_REQUEST = 'A-RELEASE request primitive'
    RELEASE_RQ = 'A-RELEASE-RQ PDU'
    RELEASE_RP = 'A-RELEASE-RP PDU'
    ABORT_REQUEST = 'A-ABORT request primitive'
    ABORT_PDU = 'A-ABORT PDU'
    TRANSPORT_CLOSED = 'Transport connection closed'
    TIMEOUT = 'Operation timer expired'
    INVALID_PDU = 'Unrecognized/invalid PDU'


# incoming PDU type -> event
PDU_EVENTS = {
    pdu.AAssociateAcPDU.pdu_type: Events.ASSOCIATE_AC,
    pdu.AAssociateRjPDU.pdu_type: Events.ASSOCIATE_RJ,
    pdu.PDataTfPDU.pdu_type: Events.P_DATA_TF,
    pdu.AReleaseRqPDU.pdu_type: Events.RELEASE_RQ,
    pdu.AReleaseRpPDU.pdu_type: Events.RELEASE_RP,
    pdu.AAbortPDU.pdu_type: Events.ABORT_PDU
}

# outgoing PDU type -> event
REQUEST_EVENTS = {
    pdu.AAssociateRqPDU.pdu_type: Events.ASSOCIATE_REQUEST,
    pdu.PDataTfPDU.pdu_type: Events.P_DATA_REQUEST,
    pdu.AReleaseRqPDU.pdu_type: Events.RELEASE_REQUEST,
    pdu.AAbortPDU.pdu_type: Events.ABORT_REQUEST
}


class StateMachine(object):
    """Service State Machine implementation.

    Actions operate on the provider (see
    :class:`~pacsnet.dulprovider.DULServiceProvider`): they read current PDU
    from ``provider.primitive``, use provider transport and put indications
    for the service user into ``provider.to_service_user``.

    :ivar current_state: current state
    :ivar provider: DUL provider
    :ivar accepted_contexts: accepted presentation contexts in current association
    :ivar dimse_decoder: decoder for incoming P-DATA-TF PDUs, used to re-create incoming DIMSE
                         message
    :ivar transition_table: state machine transition table
    """
    def __init__(self, provider):
        self.current_state = States.IDLE
        self.provider = provider
        self.accepted_contexts = {}

        self.dimse_decoder = None

        active = (States.CONNECTING, States.ASSOCIATION_REQUESTED,
                  States.ESTABLISHED, States.RELEASING)

        self.transition_table = {
            (Events.ASSOCIATE_REQUEST, States.IDLE): self.ae_1,
            (Events.TRANSPORT_CONNECTED, States.CONNECTING): self.ae_2,
            (Events.ASSOCIATE_AC, States.ASSOCIATION_REQUESTED): self.ae_3,
            (Events.ASSOCIATE_RJ, States.ASSOCIATION_REQUESTED): self.ae_4,

            (Events.P_DATA_REQUEST, States.ESTABLISHED): self.dt_1,
            (Events.P_DATA_TF, States.ESTABLISHED): self.dt_2,

            (Events.RELEASE_REQUEST, States.ESTABLISHED): self.ar_1,
            (Events.RELEASE_RQ, States.ESTABLISHED): self.ar_2,
            (Events.RELEASE_RP, States.RELEASING): self.ar_3,
            (Events.P_DATA_TF, States.RELEASING): self.ar_6,
            (Events.RELEASE_RQ, States.RELEASING): self.ar_8,
        }  # type: Dict[Tuple[Events,States],Callable[[],States]]

        for state in active:
            self.transition_table[(Events.ABORT_REQUEST, state)] = self.aa_1
            self.transition_table[(Events.TIMEOUT, state)] = self.aa_1
            self.transition_table[(Events.TRANSPORT_CLOSED, state)] = self.aa_4
            self.transition_table[(Events.INVALID_PDU, state)] = self.aa_8
        for state in active[1:]:
            self.transition_table[(Events.ABORT_PDU, state)] = self.aa_3
        for state in TERMINAL_STATES:
            self.transition_table[(Events.ABORT_REQUEST, state)] = self.aa_6
            self.transition_table[(Events.TRANSPORT_CLOSED, state)] = self.aa_6
            self.transition_table[(Events.TIMEOUT, state)] = self.aa_6

    @property
    def primitive(self):
        """Current PDU."""
        return self.provider.primitive

    @primitive.setter
    def primitive(self, value):
        self.provider.primitive = value

    @property
    def to_service_user(self):
        """Incoming PDU/DIMSE message queue"""
        return self.provider.to_service_user

    def action(self, event):
        # type: (Events) -> None
        """Execute the action triggered by event

        :raises exceptions.PDUProcessingError: if event is not expected in the
                                               current state (association is
                                               aborted)
        :raises exceptions.AssociationError: if local request is issued for
                                             association that does not exist
        """
        try:
            action = self.transition_table[(event, self.current_state)]
        except KeyError:
            self._unexpected(event)
            return
        previous_state = self.current_state
        self.current_state = action()
        if previous_state != self.current_state:
            LOGGER.debug('%s: %s -> %s', event.value, previous_state.value,
                         self.current_state.value)

    def _unexpected(self, event):
        state = self.current_state
        if state in TERMINAL_STATES:
            raise exceptions.AssociationError(
                'Association is not active ({0}), {1} is not allowed'.format(
                    state.value, event.value))
        if event in REQUEST_EVENTS.values():
            raise exceptions.AssociationError(
                '{0} is not allowed in state {1}'.format(event.value, state.value))
        LOGGER.warning('Unexpected %s in state %s, aborting association',
                       event.value, state.value)
        self.current_state = self.aa_8()
        raise exceptions.PDUProcessingError(
            'Unexpected {0} in state {1}'.format(event.value, state.value))

    def ae_1(self):
        """Issue TransportConnect request primitive to local transport service.

        State is switched before the transport is opened, so that a failed or
        timed out connect is handled in ``Connecting`` state.
        """
        self.current_state = States.CONNECTING
        self.provider.open_transport()
        return States.CONNECTING

    def ae_2(self):
        """Send A_ASSOCIATE-RQ PDU."""
        self.provider.send_pdu(self.primitive)
        return States.ASSOCIATION_REQUESTED

    def ae_3(self):
        """Issue A-ASSOCIATE confirmation (accept) primitive."""
        self.to_service_user.append(self.primitive)
        return States.ESTABLISHED

    def ae_4(self):
        """Issue A-ASSOCIATE confirmation (reject) primitive and close transport
        connection.
        """
        self.to_service_user.append(self.primitive)
        self.provider.close_transport()
        return States.ABORTED

    def dt_1(self):
        """Send P-DATA-TF PDU."""
        self.provider.send_pdu(self.primitive)
        self.primitive = None
        return States.ESTABLISHED

    def _decode_p_data(self):
        if self.dimse_decoder is None:
            self.dimse_decoder = DIMSEDecoder(self.accepted_contexts)
        self.dimse_decoder.process(self.primitive)
        if not self.dimse_decoder.receiving:
            msg, pc_id = self.dimse_decoder.msg, self.dimse_decoder.pc_id
            self.to_service_user.append((msg, pc_id))
            self.dimse_decoder = None

    def dt_2(self):
        """Send P-DATA indication primitive."""
        self._decode_p_data()
        return States.ESTABLISHED

    def ar_1(self):
        """Send A-RELEASE-RQ PDU."""
        self.primitive = pdu.AReleaseRqPDU()
        self.provider.send_pdu(self.primitive)
        return States.RELEASING

    def ar_2(self):
        """Peer requested release: send A-RELEASE-RP, issue A-RELEASE indication
        and close transport connection.
        """
        self.to_service_user.append(self.primitive)
        self.provider.send_pdu(pdu.AReleaseRpPDU())
        self.provider.close_transport()
        return States.CLOSED

    def ar_3(self):
        """Issue A-RELEASE confirmation primitive and close transport connection."""
        self.to_service_user.append(self.primitive)
        self.provider.close_transport()
        return States.CLOSED

    def ar_6(self):
        """Issue P-DATA indication while awaiting A-RELEASE-RP."""
        self._decode_p_data()
        return States.RELEASING

    def ar_8(self):
        """Release collision: answer with A-RELEASE-RP, keep waiting for
        A-RELEASE-RP.
        """
        self.provider.send_pdu(pdu.AReleaseRpPDU())
        return States.RELEASING

    def aa_1(self):
        """Send A-ABORT PDU (service-user source), close transport connection."""
        self.provider.send_abort(pdu.AAbortPDU(source=0, reason_diag=0))
        self.provider.close_transport()
        return States.ABORTED

    def aa_3(self):
        """Issue A-ABORT indication and close transport connection.

        This action is triggered by the reception of an A-ABORT PDU.
        """
        self.to_service_user.append(self.primitive)
        self.provider.close_transport()
        return States.ABORTED

    def aa_4(self):
        """Transport connection was closed: close socket."""
        self.provider.close_transport()
        return States.ABORTED

    def aa_6(self):
        """Ignore event."""
        return self.current_state

    def aa_8(self):
        """Send A-ABORT PDU (service-provider source, unexpected PDU) and
        close transport connection."""
        self.provider.send_abort(pdu.AAbortPDU(source=2, reason_diag=2))
        self.provider.close_transport()
        return States.ABORTED


class DIMSEDecoder(object):  # pylint: disable=too-few-public-methods
    """DIMSE Message decoder.

    Decodes incoming P-DATA-TF PDUs into DIMSE message instance. Message may
    span several P-DATA-TF PDUs, all its fragments must belong to the same
    presentation context.

    :ivar accepted_contexts: accepted presentation contexts in current association
    :ivar receiving: `True` if :class:`~pacsnet.fsm.DIMSEDecoder` instance has not received all
                     P-DATA-TF PDUs for the current DIMSE message
    :ivar command_set_received: `True` if Command Set for DIMSE message is received
    :ivar data_set_received: `True` if Dataset  for DIMSE message is received
    :ivar pc_id: Presentation Context ID
    :ivar msg: decoded DIMSE message
    """
    def __init__(self, accepted_contexts):
        self.accepted_contexts = accepted_contexts

        self.receiving = True

        self.command_set_received = False
        self.data_set_received = False

        self.pc_id = None
        self.msg = None

        self._encoded_command_set = []
        self._encoded_data_set = []

    def process(self, p_data):
        """Processes new incoming P-DATA-TF PDU

        P-DATA-TF may carry several PDVs, but none of them may follow the last
        fragment of the message.

        :param p_data: incoming P-DATA-TF PDU
        :raises exceptions.DIMSEProcessingError: raised if unknown PDV type is encountered
                                                 or fragments do not form a message
        """
        for value_item in p_data.data_value_items:
            if not self.receiving:
                raise exceptions.DIMSEProcessingError(
                    'Presentation data value after the end of DIMSE message')
            self._check_context(value_item.context_id)
            marker = value_item.data_value[0]
            if marker in (1, 3):
                if self.command_set_received:
                    raise exceptions.DIMSEProcessingError(
                        'Command fragment after complete command set')
                self._encoded_command_set.append(value_item.fragment)
                if marker == 3:
                    self.command_set_received = True
                    command_set = dsutils.decode(b''.join(self._encoded_command_set),
                                                 True, True)
                    self.msg = self._command_set_to_message(command_set)
                    if not self.msg.has_data_set or self.data_set_received:
                        self.receiving = False
            elif marker in (0, 2):
                if not self.command_set_received:
                    raise exceptions.DIMSEProcessingError(
                        'Data set fragment received before command set')
                self._encoded_data_set.append(value_item.fragment)
                if marker == 2:
                    self.data_set_received = True
                    self.receiving = False
            else:
                raise exceptions.DIMSEProcessingError(
                    'Incorrect first PDV byte: 0x{0:02X}'.format(marker))

        if self.data_set_received:
            self.msg.data_set = b''.join(self._encoded_data_set)

    def _check_context(self, pc_id):
        if self.pc_id is None:
            if pc_id not in self.accepted_contexts:
                raise exceptions.DIMSEProcessingError(
                    'P-DATA received for presentation context {0} that '
                    'was not accepted'.format(pc_id))
            self.pc_id = pc_id
        elif pc_id != self.pc_id:
            raise exceptions.DIMSEProcessingError(
                'Message fragments for different presentation contexts '
                '({0} and {1})'.format(self.pc_id, pc_id))

    @staticmethod
    def _command_set_to_message(command_set):
        try:
            command_field = command_set[(0x0000, 0x0100)].value
        except KeyError:
            raise exceptions.DIMSEProcessingError('Command set has no Command Field')
        try:
            msg_type = dimsemessages.MESSAGE_TYPE[command_field]
        except KeyError:
            raise exceptions.DIMSEProcessingError(
                'Unsupported DIMSE command: 0x{0:04X}'.format(command_field))
        return msg_type(command_set)
