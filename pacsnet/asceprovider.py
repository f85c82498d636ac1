# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
#
"""
Association control: :class:`~pacsnet.asceprovider.AssociationRequester`
negotiates an association with a remote application entity, moves DIMSE
messages over it and ends it with A-RELEASE or A-ABORT.

Requesters are created by :class:`~pacsnet.applicationentity.ClientAE`.

Association is never shared and never outlives a single operation: it is
requested, used for one DIMSE exchange and released (or aborted).
"""

import collections
import functools
import itertools
import logging

from pydicom import uid

from . import dulprovider
from . import exceptions
from . import pdu
from . import uids
from . import userdataitems

LOGGER = logging.getLogger('pacsnet.asceprovider')

PContextDef = collections.namedtuple(
    'PContextDef',
    ['id', 'sop_class', 'supported_ts']
)


def build_pres_context_def_list(context_def_list):
    """Builds a list of Presentation Context Items

    :param context_def_list: dict of presentation context ID and PContextDef
    :type context_def_list: Dict[int,PContextDef]
    :return: generator that yields :class:`pacsnet.pdu.PresentationContextItemRQ` instances
    """
    return (
        pdu.PresentationContextItemRQ(
            pc_id, pdu.AbstractSyntaxSubItem(ctx.sop_class),
            [pdu.TransferSyntaxSubItem(i) for i in ctx.supported_ts]
        )
        for pc_id, ctx in sorted(context_def_list.items())
    )


def build_user_information(max_pdu_length, remote_ae):
    """Builds user information sub-items for A-ASSOCIATE-RQ

    User identity sub-item is added only if remote AE has a user name.

    :param max_pdu_length: maximum PDU length we are willing to receive
    :param remote_ae: remote AE parameters
    :return: list of sub-items
    """
    user_information = [
        userdataitems.MaximumLengthSubItem(max_pdu_length),
        userdataitems.ImplementationClassUIDSubItem(uids.IMPLEMENTATION_UID),
        userdataitems.ImplementationVersionNameSubItem(uids.IMPLEMENTATION_VERSION_NAME)
    ]
    username = remote_ae.get('username')
    if username:
        user_information.append(
            userdataitems.UserIdentityNegotiationSubItem.from_credentials(
                username, remote_ae.get('password')))
    return user_information


class AssociationRequester(object):
    """Requesting side of a single association.

    Instances come from :meth:`~pacsnet.applicationentity.ClientAE.request_association`.

    :ivar ae: local application entity
    :ivar dul: DUL service provider
    :ivar context_def_list: presentation context definitions in a form of dict
                            (PC ID -> Presentation Context)
    :ivar remote_ae: dictionary, containing remote AET, address, port and credentials
    :ivar max_pdu_length: maximum length of outgoing P-DATA-TF PDUs. Capped by
                          peer's maximum length once association is established.
    :ivar accepted_contexts: accepted presentation contexts (PC ID -> PContextDef)
    :ivar sop_classes_as_scu: dictionary which maps accepted SOP Classes to presentation contexts.
                              empty, until association is established.
    """

    def __init__(self, local_ae, remote_ae):
        self.ae = local_ae
        self.remote_ae = remote_ae
        self.max_pdu_length = local_ae.max_pdu_length
        self.dul = dulprovider.DULServiceProvider(local_ae.timeout, local_ae.max_pdu_length)
        self.context_def_list = local_ae.copy_context_def_list()
        self.association_established = False
        self.accepted_contexts = {}
        self.sop_classes_as_scu = {}
        self._message_ids = itertools.count(1)

    @property
    def state(self):
        """Current association state (see :class:`~pacsnet.fsm.States`)"""
        return self.dul.state

    def next_message_id(self):
        """Returns next Message ID. IDs start at 1 in every association."""
        return next(self._message_ids)

    def request(self):
        """Requests association with remote AE and waits for association response.

        :raises exceptions.AssociationRejectedError: remote AE rejected association
        :raises exceptions.ClassNotSupportedError: no presentation context was accepted
        :raises exceptions.TimeoutError: remote AE did not respond in time
        :raises exceptions.ConnectionError: on any other transport or protocol failure
        """
        variable_items = list(itertools.chain(
            [pdu.ApplicationContextItem(uids.APPLICATION_CONTEXT_NAME)],
            build_pres_context_def_list(self.context_def_list),
            [pdu.UserInformationItem(build_user_information(self.ae.max_pdu_length,
                                                            self.remote_ae))]
        ))
        assoc_rq = pdu.AAssociateRqPDU(
            called_ae_title=self.remote_ae['aet'],
            calling_ae_title=self.ae.local_ae['aet'],
            variable_items=variable_items
        )
        address = (self.remote_ae['address'], self.remote_ae['port'])
        self.dul.connect(address, assoc_rq)

        response = self._get_dul_message()
        if isinstance(response, tuple) or response.pdu_type != pdu.AAssociateAcPDU.pdu_type:
            self.abort()
            raise exceptions.AssociationError('Invalid response to association request')

        # Get maximum pdu length from answer
        max_pdu_length = response.max_pdu_length
        if max_pdu_length and self.max_pdu_length > max_pdu_length:
            self.max_pdu_length = max_pdu_length

        # Get accepted presentation contexts
        accepted = (ctx for ctx in response.presentation_context_items if ctx.accepted)
        for ctx in accepted:
            try:
                sop_class = self.context_def_list[ctx.context_id].sop_class
            except KeyError:
                self.abort()
                raise exceptions.PDUProcessingError(
                    'Presentation context {0} was not proposed'.format(ctx.context_id))
            pc_id = ctx.context_id
            ts_uid = uid.UID(ctx.ts_sub_item.name)
            self.sop_classes_as_scu[sop_class] = (pc_id, ts_uid)
            self.accepted_contexts[pc_id] = PContextDef(pc_id, sop_class, ts_uid)
        self.dul.accepted_contexts = self.accepted_contexts

        if not self.accepted_contexts:
            self.abort()
            raise exceptions.ClassNotSupportedError(
                '{0} did not accept any of proposed presentation contexts'.format(
                    self.remote_ae['aet']))

        self.association_established = True
        LOGGER.info('Association established with %s at %s:%s (max PDU length %d)',
                    self.remote_ae['aet'], address[0], address[1], self.max_pdu_length)
        return response

    def get_scu(self, sop_class):
        """Returns service for `sop_class` bound to this association

        Service (see :doc:`sopclass`) gets this requester as its first
        argument and the accepted presentation context as the second one.

        :param sop_class: SOP Class UID
        :type sop_class: Union[str,pydicom.uid.UID]
        :raises exceptions.ClassNotSupportedError: raised if provided SOP Class UID is not
                                                   supported by association.
        :return: SCU function
        """
        try:
            pc_id, ts = self.sop_classes_as_scu[sop_class]
            service = self.ae.supported_scu[sop_class]
        except KeyError:
            raise exceptions.ClassNotSupportedError(
                'SOP Class {0} not supported as SCU'.format(sop_class)
            )
        else:
            return functools.partial(service, self, PContextDef(pc_id, sop_class, ts))

    def send(self, dimse_msg, pc_id):
        """Sends DIMSE message

        :param dimse_msg: DIMSE message
        :type dimse_msg: dimsemessages.DIMSEMessage
        :param pc_id: Presentation Context ID
        :type pc_id: int
        """
        LOGGER.debug('Sending %r (presentation context %d)', dimse_msg, pc_id)
        for p_data in dimse_msg.encode(pc_id, self.max_pdu_length):
            self.dul.send(p_data)

    def receive(self, cancel=None):
        """Receives DIMSE message

        :param cancel: optional cancellation flag, checked while waiting
        :return: tuple, containing DIMSE message and presentation context ID.
                 ``(None, None)`` if `cancel` was set before message arrived.
        :rtype: Tuple[dimsemessages.DIMSEMessage, int]
        """
        received = self._get_dul_message(expect_message=True, cancel=cancel)
        if received is None:
            return None, None
        dimse_msg, pc_id = received
        LOGGER.debug('Received %r (presentation context %d)', dimse_msg, pc_id)
        return dimse_msg, pc_id

    def release(self):
        """Releases association.

        Requests the release of the association and waits for
        confirmation. DIMSE messages that are still arriving are discarded.
        """
        self.dul.send(pdu.AReleaseRqPDU())
        while True:
            response = self._get_dul_message()
            if isinstance(response, tuple):
                LOGGER.debug('Discarding %r received during release', response[0])
                continue
            if response.pdu_type == pdu.AReleaseRpPDU.pdu_type:
                break
        self.association_established = False
        LOGGER.info('Association with %s released', self.remote_ae['aet'])
        return response

    def abort(self):
        """Aborts association (A-ABORT with service-user source) and closes connection.

        Safe to call on association that is already closed.
        """
        if self.association_established:
            LOGGER.warning('Aborting association with %s', self.remote_ae['aet'])
        self.dul.abort()
        self.association_established = False

    def _get_dul_message(self, expect_message=False, cancel=None):
        dul_msg = self.dul.receive(cancel)
        if dul_msg is None or isinstance(dul_msg, tuple):
            return dul_msg
        if dul_msg.pdu_type == pdu.AReleaseRqPDU.pdu_type:
            self.association_established = False
            raise exceptions.AssociationReleasedError(
                'Association released by {0}'.format(self.remote_ae['aet']))
        if dul_msg.pdu_type == pdu.AAbortPDU.pdu_type:
            self.association_established = False
            LOGGER.warning('Association aborted by %s (source %d, reason %d)',
                           self.remote_ae['aet'], dul_msg.source, dul_msg.reason_diag)
            raise exceptions.AssociationAbortedError(dul_msg.source, dul_msg.reason_diag)
        if dul_msg.pdu_type == pdu.AAssociateRjPDU.pdu_type:
            exc = exceptions.AssociationRejectedError(
                dul_msg.result, dul_msg.source, dul_msg.reason_diag)
            LOGGER.warning('%s: %s', self.remote_ae['aet'], exc)
            raise exc
        if expect_message:
            self.abort()
            raise exceptions.PDUProcessingError('Unexpected {0}'.format(dul_msg))
        return dul_msg
