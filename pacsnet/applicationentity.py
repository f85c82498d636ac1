# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
Local (calling) application entity.

:class:`ClientAE` holds the services the local AE is able to use as SCU and
presentation contexts that are proposed for them. Association is requested
with :meth:`ClientAE.request_association`::

    ae = ClientAE('SERENVALE').add_scu(sopclass.verification_scu)
    remote_ae = {'address': 'pacs.local', 'port': 104, 'aet': 'PACS'}
    with ae.request_association(remote_ae) as assoc:
        echo = assoc.get_scu(uids.VERIFICATION_SOP_CLASS)
        status = echo(assoc.next_message_id())
"""

import contextlib
import copy
import itertools
import logging
import platform
import threading

from pydicom import uid

from . import asceprovider
from . import config
from . import exceptions
from . import uids

LOGGER = logging.getLogger('pacsnet.applicationentity')


class ClientAE(object):
    """Represents a local DICOM application entity in a requestor role.

    :ivar supported_ts: transfer syntaxes proposed for each presentation
                        context, in order of preference
    :ivar timeout: operation timeout in seconds
    :ivar max_pdu_length: maximum P-DATA-TF PDU length we are willing to receive
    :ivar context_def_list: presentation context definitions (PC ID -> PContextDef)
    :ivar supported_scu: SOP Class UID -> service mapping
    :ivar local_ae: local AE parameters (address and AE title)
    """
    default_ts = uids.SUPPORTED_TRANSFER_SYNTAXES

    def __init__(self, ae_title, supported_ts=None,
                 max_pdu_length=config.DEFAULT_MAX_PDU_LENGTH,
                 timeout=config.DEFAULT_TIMEOUT):
        if supported_ts is None:
            supported_ts = self.default_ts

        self.supported_ts = tuple(supported_ts)
        self.timeout = timeout
        self.max_pdu_length = max_pdu_length

        self.context_def_list = {}
        self.supported_scu = {}
        self.lock = threading.Lock()
        self.local_ae = {'address': platform.node(), 'aet': ae_title}

    def add_scu(self, service, sop_classes=None):
        """Adds service as SCU.

        :param service: service callable (see :doc:`sopclass`)
        :param sop_classes: SOP Classes to use service for. Defaults to
                            ``sop_classes`` attribute of the service. Required for
                            services that provide no SOP classes (e.g. storage)
        :return: self, so calls can be chained
        """
        if sop_classes is None:
            sop_classes = service.sop_classes
        if not sop_classes:
            raise exceptions.ConfigurationError(
                'No SOP Classes provided for {0}'.format(service.__name__))
        self.supported_scu.update({
            sop_class: service for sop_class in sop_classes
        })
        self.update_context_def_list(sop_classes)
        return self

    def update_context_def_list(self, sop_classes):
        """Adds presentation context for every SOP Class that has none yet.

        Presentation context IDs are odd numbers: 1, 3, 5 ...
        """
        with self.lock:
            proposed = set(ctx.sop_class for ctx in self.context_def_list.values())
            start = max(self.context_def_list.keys()) + 2 if self.context_def_list else 1
            new_classes = [sop_class for sop_class in sop_classes if sop_class not in proposed]
            self.context_def_list.update(
                (pc_id, asceprovider.PContextDef(pc_id, uid.UID(sop_class), self.supported_ts))
                for sop_class, pc_id in zip(new_classes, itertools.count(start, 2))
            )

    def copy_context_def_list(self):
        with self.lock:
            return copy.copy(self.context_def_list)

    @contextlib.contextmanager
    def request_association(self, remote_ae):
        """Requests association to a remote application entity.

        Association is released when context is exited normally, failure to
        release an association is logged and association is aborted instead.
        Any exception raised within the context aborts association before it
        propagates.

        :param remote_ae: dictionary with remote AE parameters: ``aet``,
                          ``address``, ``port`` and optional ``username``,
                          ``password``
        :return: context manager that yields established association
        """
        assoc = asceprovider.AssociationRequester(self, remote_ae=remote_ae)
        try:
            assoc.request()
            yield assoc
        except BaseException:
            assoc.abort()
            raise

        try:
            assoc.release()
        except exceptions.PACSError as exc:
            LOGGER.warning('Failed to release association with %s: %s',
                           remote_ae['aet'], exc)
            assoc.abort()
