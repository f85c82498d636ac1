# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
#

"""
In this module you can find classes that implement DIMSE-C messages used by
this package as they are described in PS3.7 Section 9: C-ECHO, C-FIND,
C-STORE and C-CANCEL.

Command set of every message is always encoded in Implicit VR Little Endian.
Data set (if any) is kept as raw bytes, encoded by the service class with the
transfer syntax of the accepted presentation context.

.. note::

    Message classes do not validate required and conditional fields. Service
    classes in :doc:`sopclass` always fill in all required fields.
"""

import struct
from typing import Iterator, Tuple, Union  # pylint: disable=unused-import

from pydicom.dataset import Dataset

from . import dsutils
from . import pdu

NO_DATASET = 0x0101
DATASET_PRESENT = 0x0001

PRIORITY_LOW = 0x0002
PRIORITY_MEDIUM = 0x0000
PRIORITY_HIGH = 0x0001

PDV_OVERHEAD = 6
"""PDV item length field, presentation context ID and message control header"""


def value_or_none(elem):
    """Gets element value or returns None, if element is None

    :param elem: dataset element or None
    :return: element value or None
    """
    return elem.value if elem is not None else None


def fragment(data, max_pdu_length, normal, last):
    # type: (bytes,int,int,int) -> Iterator[Tuple[bytes,int]]
    """Fragments encoded command set or dataset into chunks

    Each chunk fits into single P-DATA-TF PDU with a single PDV item.

    :param data: encoded command set or dataset
    :type data: bytes
    :param max_pdu_length: maximum PDU length (peer's maximum length received)
    :type max_pdu_length: int
    :param normal: message control header for all chunks but the last one
    :type normal: int
    :param last: message control header for the last chunk
    :type last: int
    :yield: tuple of bytes: fragment and its message control header
    :rtype: Tuple[bytes,int]
    """
    maxsize = max_pdu_length - PDV_OVERHEAD
    if maxsize <= 0:
        raise ValueError('Maximum PDU length {0} is too small'.format(max_pdu_length))
    length = len(data)
    for pos in range(0, length, maxsize):
        has_next = pos + maxsize < length
        yield data[pos:pos + maxsize], normal if has_next else last


def dimse_property(tag):
    """Creates property for DIMSE message using specified attribute tag

    :param tag: tuple with group and element numbers
    :return: property that gets/sets value in command dataset
    """

    def setter(self, value):
        self.command_set[tag].value = value
    return property(lambda self: value_or_none(self.command_set.get(tag)), setter)


class StatusMixin(object):  # pylint: disable=too-few-public-methods
    """Helper mixin that defines common `status` and `error_comment`
    properties in response messages.
    """
    status = dimse_property((0x0000, 0x0900))

    @property
    def error_comment(self):
        """Error Comment (0000,0902) or ``None`` if response has none"""
        value = value_or_none(self.command_set.get((0x0000, 0x0902)))
        return str(value).strip() if value else None


class PriorityMixin(object):  # pylint: disable=too-few-public-methods
    """Helper mixin that defines common `priority` property in request messages"""
    priority = dimse_property((0x0000, 0x0700))


class DIMSEMessage(object):
    """Base DIMSE message class.

    This class is not used directly, rather its subclasses, that represent specific DIMSE messages
    are used.

    :cvar command_field: Command Field (0000,0100) value of the message
    :cvar command_fields: command set keywords with their default values
    """
    command_field = None
    command_fields = ()

    def __init__(self, command_set=None):
        # type: (Union[Dataset,None]) -> None
        self._data_set = None
        if command_set is not None:
            self.command_set = command_set
        else:
            self.command_set = Dataset()
            self.command_set.CommandGroupLength = 0
            self.command_set.CommandField = self.command_field
            self.command_set.CommandDataSetType = NO_DATASET
            for keyword, default in self.command_fields:
                setattr(self.command_set, keyword, default)

    sop_class_uid = dimse_property((0x0000, 0x0002))

    @property
    def has_data_set(self):
        """``True`` if command set announces a data set"""
        return value_or_none(self.command_set.get((0x0000, 0x0800))) != NO_DATASET

    @property
    def data_set(self):
        """Encoded dataset included with a DIMSE Message"""
        return self._data_set

    @data_set.setter
    def data_set(self, value):
        self.command_set.CommandDataSetType = DATASET_PRESENT if value else NO_DATASET
        self._data_set = value

    def encode(self, pc_id, max_pdu_length):
        # type: (int,int) -> Iterator[pdu.PDataTfPDU]
        """Returns the encoded message as a series of P-DATA-TF PDU objects.

        Command group length is updated before encoding. Each PDU carries
        single PDV item.

        :param pc_id: Presentation Context ID
        :type pc_id: int
        :param max_pdu_length: maximum PDU length
        :type max_pdu_length: int
        :yield: P-DATA-TF PDUs
        :rtype: pdu.PDataTfPDU
        """
        self.set_length()
        encoded_command_set = dsutils.encode(self.command_set, True, True)

        for item, bit in fragment(encoded_command_set, max_pdu_length, 1, 3):
            value_item = pdu.PresentationDataValueItem(pc_id, struct.pack('B', bit) + item)
            yield pdu.PDataTfPDU([value_item])

        if self.data_set:
            for item, bit in fragment(self.data_set, max_pdu_length, 0, 2):
                value_item = pdu.PresentationDataValueItem(pc_id, struct.pack('B', bit) + item)
                yield pdu.PDataTfPDU([value_item])

    def set_length(self):
        """Sets DIMSE message length attribute in command dataset"""
        it = (len(dsutils.encode_element(elem, True, True))
              for elem in self.command_set if elem.tag != 0x00000000)
        self.command_set.CommandGroupLength = sum(it)

    def __repr__(self):
        return '{0}(message_id={1})'.format(
            type(self).__name__,
            getattr(self, 'message_id', None) or
            getattr(self, 'message_id_being_responded_to', None))


class DIMSERequestMessage(DIMSEMessage):
    """Base class for all DIMSE request messages"""
    message_id = dimse_property((0x0000, 0x0110))


class DIMSEResponseMessage(DIMSEMessage):
    """Base class for all DIMSE response messages"""
    message_id_being_responded_to = dimse_property((0x0000, 0x0120))


class CEchoRQMessage(DIMSERequestMessage):
    """C-ECHO-RQ Message.

    Complete definition can be found in DICOM PS3.7, 9.3.5.1 C-ECHO-RQ
    """

    command_field = 0x0030
    command_fields = (('AffectedSOPClassUID', ''), ('MessageID', 0))


class CEchoRSPMessage(DIMSEResponseMessage, StatusMixin):
    """C-ECHO-RSP Message.

    Complete definition can be found in DICOM PS3.7, 9.3.5.5 C-ECHO-RSP
    """

    command_field = 0x8030
    command_fields = (('AffectedSOPClassUID', ''), ('MessageIDBeingRespondedTo', 0),
                      ('Status', 0))


class CStoreRQMessage(DIMSERequestMessage, PriorityMixin):
    """C-STORE-RQ Message.

    Complete definition can be found in DICOM PS3.7, 9.3.1.1 C-STORE-RQ
    """

    command_field = 0x0001
    command_fields = (('AffectedSOPClassUID', ''), ('MessageID', 0),
                      ('Priority', PRIORITY_MEDIUM), ('AffectedSOPInstanceUID', ''))

    affected_sop_instance_uid = dimse_property((0x0000, 0x1000))
    """
    Contains the UID of the SOP Instance to be stored.
    """


class CStoreRSPMessage(DIMSEResponseMessage, StatusMixin):
    """C-STORE-RSP Message.

    Complete definition can be found in DICOM PS3.7, 9.3.1.2 C-STORE-RSP
    """

    command_field = 0x8001
    command_fields = (('AffectedSOPClassUID', ''), ('MessageIDBeingRespondedTo', 0),
                      ('Status', 0), ('AffectedSOPInstanceUID', ''))

    affected_sop_instance_uid = dimse_property((0x0000, 0x1000))
    """
    Contains the UID of the SOP Instance stored.
    """


class CFindRQMessage(DIMSERequestMessage, PriorityMixin):
    """C-FIND-RQ Message.

    Complete definition can be found in DICOM PS3.7, 9.3.2.1 C-FIND-RQ
    """

    command_field = 0x0020
    command_fields = (('AffectedSOPClassUID', ''), ('MessageID', 0),
                      ('Priority', PRIORITY_MEDIUM))


class CFindRSPMessage(DIMSEResponseMessage, StatusMixin):
    """C-FIND-RSP Message.

    Complete definition can be found in DICOM PS3.7, 9.3.2.2 C-FIND-RSP
    """

    command_field = 0x8020
    command_fields = (('AffectedSOPClassUID', ''), ('MessageIDBeingRespondedTo', 0),
                      ('Status', 0))


class CCancelRQMessage(DIMSEResponseMessage):
    """C-CANCEL-FIND-RQ Message.

    Complete definition can be found in DICOM PS3.7, 9.3.2.3 C-CANCEL-FIND-RQ.
    Message ID Being Responded To holds Message ID of the C-FIND-RQ being
    cancelled.
    """

    command_field = 0x0FFF
    command_fields = (('MessageIDBeingRespondedTo', 0),)


MESSAGE_TYPE = {
    CStoreRQMessage.command_field: CStoreRQMessage,
    CStoreRSPMessage.command_field: CStoreRSPMessage,
    CFindRQMessage.command_field: CFindRQMessage,
    CFindRSPMessage.command_field: CFindRSPMessage,
    CCancelRQMessage.command_field: CCancelRQMessage,
    CEchoRQMessage.command_field: CEchoRQMessage,
    CEchoRSPMessage.command_field: CEchoRSPMessage,
}
