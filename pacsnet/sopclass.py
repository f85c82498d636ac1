# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
Service user side of Verification, Study Root Query/Retrieve FIND and
Storage.

A service is a plain function tagged with the SOP Classes it can serve
(``sop_classes`` attribute, set by the :func:`sop_classes` decorator).
:class:`~pacsnet.applicationentity.ClientAE` uses that attribute to decide
which presentation contexts to propose, and
:meth:`~pacsnet.asceprovider.AssociationRequester.get_scu` hands the
function back already bound to the association and the accepted context::

    @sop_classes([uids.VERIFICATION_SOP_CLASS])
    def my_scu(asce, ctx, msg_id):
        ...

    status = assoc.get_scu(uids.VERIFICATION_SOP_CLASS)(next(message_ids))

``asce`` is the :class:`~pacsnet.asceprovider.AssociationRequester`,
``ctx`` is a :class:`~pacsnet.asceprovider.PContextDef` with context ID,
SOP Class UID and the accepted transfer syntax. Remaining arguments come
from the caller.

Response statuses are returned as :class:`~pacsnet.statuses.Status`
values, they are never raised.
"""

import logging

from . import dimsemessages
from . import dsutils
from . import exceptions
from . import statuses
from . import uids

LOGGER = logging.getLogger('pacsnet.sopclass')


def sop_classes(sop_class_uids):
    """Appends UIDs to the ``sop_classes`` list of the decorated service"""
    def augment(service):
        if not hasattr(service, 'sop_classes'):
            service.sop_classes = []
        service.sop_classes.extend(sop_class_uids)
        return service
    return augment


def receive_response(asce, ctx, msg_id, response_type, cancel=None):
    """Receives response for a request.

    :param asce: association
    :param ctx: presentation context of the request
    :param msg_id: Message ID of the request
    :param response_type: expected response message class
    :param cancel: optional cancellation flag, checked while waiting
    :raises exceptions.DIMSEProcessingError: if received message is not a
                                             response for the request
    :return: response message or ``None`` if waiting was cancelled
    """
    response, pc_id = asce.receive(cancel)
    if response is None:
        return None
    if not isinstance(response, response_type):
        raise exceptions.DIMSEProcessingError(
            'Expected {0}, got {1!r}'.format(response_type.__name__, response))
    if pc_id != ctx.id:
        raise exceptions.DIMSEProcessingError(
            'Response received on presentation context {0}, request was sent '
            'on {1}'.format(pc_id, ctx.id))
    if response.message_id_being_responded_to != msg_id:
        raise exceptions.DIMSEProcessingError(
            'Response is for message {0}, expected response for message {1}'.format(
                response.message_id_being_responded_to, msg_id))
    return response


def response_status(response):
    """Wraps response status into :class:`~pacsnet.statuses.Status`"""
    if response.status is None:
        raise exceptions.DIMSEProcessingError('{0!r} has no Status'.format(response))
    return statuses.Status(response.status, response.error_comment)


@sop_classes([uids.VERIFICATION_SOP_CLASS])
def verification_scu(asce, ctx, msg_id):
    """Sends C-ECHO-RQ and waits for the answer

    :param msg_id: Message ID of the request
    :return: response status, :data:`~pacsnet.statuses.SUCCESS` when remote
             AE is alive
    """
    request = dimsemessages.CEchoRQMessage()
    request.message_id = msg_id
    request.sop_class_uid = ctx.sop_class
    asce.send(request, ctx.id)

    response = receive_response(asce, ctx, msg_id, dimsemessages.CEchoRSPMessage)
    status = response_status(response)
    LOGGER.info('C-ECHO finished with status %s', status)
    return status


@sop_classes([])
def storage_scu(asce, ctx, dataset, msg_id):
    """Sends dataset with C-STORE-RQ

    Service comes without SOP Classes, they are added for the storage
    classes a client needs (``add_scu(storage_scu, [...])``).
    Dataset is encoded with transfer syntax of accepted presentation context.

    :param dataset: SOP Instance to store
    :param msg_id: Message ID of the request
    :return: response status
    """
    request = dimsemessages.CStoreRQMessage()
    request.message_id = msg_id
    request.priority = dimsemessages.PRIORITY_MEDIUM
    request.sop_class_uid = ctx.sop_class
    request.affected_sop_instance_uid = dataset.SOPInstanceUID
    request.data_set = dsutils.encode_for(dataset, ctx.supported_ts)
    asce.send(request, ctx.id)

    response = receive_response(asce, ctx, msg_id, dimsemessages.CStoreRSPMessage)
    status = response_status(response)
    if status.is_success:
        LOGGER.info('Stored %s', dataset.SOPInstanceUID)
    else:
        LOGGER.warning('C-STORE of %s finished with status %s',
                       dataset.SOPInstanceUID, status)
    return status


FIND_SOP_CLASSES = [uids.STUDY_ROOT_FIND_SOP_CLASS]


@sop_classes(FIND_SOP_CLASSES)
def qr_find_scu(asce, ctx, ds, msg_id, cancel=None):
    """Sends C-FIND-RQ with identifier `ds` and yields ``(dataset, status)``
    for every response.

    Dataset is ``None`` for the final (non-pending) response, after which
    generator stops.

    Cancel object (anything with ``is_set()`` method, like
    :class:`threading.Event`) is checked before waiting for each response
    and then polled while waiting. Once it is set C-CANCEL-RQ is sent and
    generator exits without waiting for the final response.

    :param ds: query identifier
    :param msg_id: Message ID of the request
    :param cancel: optional cancellation flag
    """
    request = dimsemessages.CFindRQMessage()
    request.message_id = msg_id
    request.sop_class_uid = ctx.sop_class
    request.priority = dimsemessages.PRIORITY_MEDIUM
    request.data_set = dsutils.encode_for(ds, ctx.supported_ts)
    asce.send(request, ctx.id)

    matches = 0
    while True:
        response = None
        if cancel is None or not cancel.is_set():
            response = receive_response(asce, ctx, msg_id, dimsemessages.CFindRSPMessage,
                                        cancel)
        if response is None:
            c_cancel = dimsemessages.CCancelRQMessage()
            c_cancel.message_id_being_responded_to = msg_id
            asce.send(c_cancel, ctx.id)
            LOGGER.info('C-FIND cancelled after %d matches', matches)
            break
        status = response_status(response)
        if response.data_set and status.is_pending:
            data_set = dsutils.decode_for(response.data_set, ctx.supported_ts)
            matches += 1
        else:
            data_set = None
        yield data_set, status
        if not status.is_pending:
            LOGGER.info('C-FIND finished with status %s, %d matches', status, matches)
            break
