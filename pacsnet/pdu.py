# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
#

"""
Upper layer Protocol Data Units (PS 3.8 section 9.3) and their variable items.

Every class here knows how to ``encode`` itself into bytes and has a
``decode`` factory that builds an instance back. PDUs are decoded from the
complete byte string (header included), items are decoded from a stream
positioned at the item header.

All PDUs share a 6 byte header: PDU type, a reserved byte and a big endian
length of everything that follows. The transport reads :data:`PDU_HEADER`
first, then the body, and hands the result to :func:`decode_pdu`.

Item classes used inside association PDUs:

        * :class:`~pacsnet.pdu.ApplicationContextItem`
        * :class:`~pacsnet.pdu.PresentationContextItemRQ`
        * :class:`~pacsnet.pdu.PresentationContextItemAC`
        * :class:`~pacsnet.pdu.AbstractSyntaxSubItem`
        * :class:`~pacsnet.pdu.TransferSyntaxSubItem`
        * :class:`~pacsnet.pdu.UserInformationItem`

P-DATA-TF PDUs carry :class:`~pacsnet.pdu.PresentationDataValueItem` items.
User Information sub-items live in :doc:`userdataitems`.
"""

import io
import struct

from pydicom import uid

from . import exceptions
from . import userdataitems

PDU_HEADER = struct.Struct('>B B I')
"""Common PDU header: type, reserved, length"""

ITEM_HEADER = struct.Struct('>B B H')
"""Common item header: type, reserved, length"""

MAX_CONTROL_PDU_LENGTH = 0x40000
"""Upper limit for length of any PDU other than P-DATA-TF"""

AE_TITLE_LENGTH = 16


def _peek_type(stream):
    head = stream.read(1)
    if not head:
        return None
    stream.seek(-1, io.SEEK_CUR)
    return head[0]


def _read_header(stream, header):
    return header.unpack(userdataitems.read_exact(stream, header.size))


def pad_ae_title(ae_title):
    """Encodes AE title as 16 bytes, padded with spaces or truncated

    :param ae_title: AE title
    :rtype: bytes
    """
    return ae_title.encode('ascii')[:AE_TITLE_LENGTH].ljust(AE_TITLE_LENGTH, b' ')


def _strip_ae_title(raw_ae_title):
    return raw_ae_title.strip(b' \0').decode('ascii', 'replace')


class _PDU(object):
    pdu_type = None
    """PDU Type"""

    def total_length(self):
        """Length of the encoded PDU, header included"""
        return PDU_HEADER.size + self.pdu_length


class _Item(object):
    item_type = None
    """Item type"""

    def total_length(self):
        """Length of the encoded item, header included"""
        return ITEM_HEADER.size + self.item_length


class AAssociatePDUBase(_PDU):
    """Common part of A-ASSOCIATE-RQ and A-ASSOCIATE-AC

    Both PDUs have the same layout. AE titles are kept as stripped
    strings, padding happens only on the wire.

    :ivar called_ae_title: AE title of the SCP
    :ivar calling_ae_title: AE title of the SCU
    :ivar variable_items: application context, presentation contexts and
                          user information items, in wire order
    :ivar protocol_version: protocol version bit field, always 1 in practice
    """
    fixed_part = struct.Struct('>B B I H H 16s 16s 32s')

    def __init__(self, called_ae_title, calling_ae_title, variable_items,
                 protocol_version=1):
        self.called_ae_title = called_ae_title
        self.calling_ae_title = calling_ae_title
        self.variable_items = variable_items
        self.protocol_version = protocol_version

    def __repr__(self):
        return '{0}(called={1!r}, calling={2!r}, items={3!r})'.format(
            type(self).__name__, self.called_ae_title, self.calling_ae_title,
            self.variable_items)

    @property
    def pdu_length(self):
        # fixed part after the header is 68 bytes
        return self.fixed_part.size - PDU_HEADER.size + \
            sum(item.total_length() for item in self.variable_items)

    @property
    def presentation_context_items(self):
        """Presentation context items of the PDU"""
        return [item for item in self.variable_items
                if isinstance(item, (PresentationContextItemRQ, PresentationContextItemAC))]

    @property
    def user_information(self):
        """User information item or ``None`` if PDU has none"""
        for item in self.variable_items:
            if isinstance(item, UserInformationItem):
                return item
        return None

    @property
    def max_pdu_length(self):
        """Maximum P-DATA-TF length announced in user information
        (``None`` if not announced)
        """
        user_information = self.user_information
        if user_information is None:
            return None
        for sub_item in user_information.user_data:
            if isinstance(sub_item, userdataitems.MaximumLengthSubItem):
                return sub_item.maximum_length_received
        return None

    def encode(self):
        fixed = self.fixed_part.pack(self.pdu_type, 0x00, self.pdu_length,
                                     self.protocol_version, 0x00,
                                     pad_ae_title(self.called_ae_title),
                                     pad_ae_title(self.calling_ae_title),
                                     b'\0' * 32)
        return fixed + b''.join(item.encode() for item in self.variable_items)

    @classmethod
    def decode(cls, raw_bytes):
        """Builds PDU from its complete binary representation

        :param raw_bytes: PDU bytes, header included
        :raises exceptions.PDUProcessingError: if PDU contains unknown item
        :return: decoded PDU
        """
        stream = io.BytesIO(raw_bytes)
        fields = _read_header(stream, cls.fixed_part)
        variable_items = []
        item_type = _peek_type(stream)
        while item_type is not None:
            factory = VARIABLE_ITEM_TYPES.get(item_type)
            if factory is None:
                raise exceptions.PDUProcessingError(
                    'Invalid variable item type: 0x{0:02X}'.format(item_type))
            variable_items.append(factory.decode(stream))
            item_type = _peek_type(stream)
        return cls(called_ae_title=_strip_ae_title(fields[5]),
                   calling_ae_title=_strip_ae_title(fields[6]),
                   variable_items=variable_items,
                   protocol_version=fields[3])


class AAssociateRqPDU(AAssociatePDUBase):
    """A-ASSOCIATE-RQ PDU (PS 3.8 9.3.2)"""

    pdu_type = 0x01


class AAssociateAcPDU(AAssociatePDUBase):
    """A-ASSOCIATE-AC PDU (PS 3.8 9.3.3)"""

    pdu_type = 0x02


class _FixedLengthPDU(_PDU):
    """PDU with a 4 byte body.

    Body is reserved bytes followed by one byte per name in `fields`.
    """
    pdu_length = 4
    layout = struct.Struct('>B B I B B B B')
    fields = ()

    def __init__(self, *values):
        for name, value in zip(self.fields, values):
            setattr(self, name, value)

    def __repr__(self):
        return '{0}({1})'.format(type(self).__name__, ', '.join(
            '{0}={1}'.format(name, getattr(self, name)) for name in self.fields))

    def encode(self):
        values = [getattr(self, name) for name in self.fields]
        body = [0x00] * (self.pdu_length - len(values)) + values
        return self.layout.pack(self.pdu_type, 0x00, self.pdu_length, *body)

    @classmethod
    def decode(cls, rawstring):
        if len(rawstring) != cls.layout.size:
            raise exceptions.PDUProcessingError(
                'Invalid PDU length: {0} (expected {1})'.format(
                    len(rawstring), cls.layout.size))
        body = cls.layout.unpack(rawstring)[3:]
        return cls(*body[len(body) - len(cls.fields):])


class AAssociateRjPDU(_FixedLengthPDU):
    """A-ASSOCIATE-RJ PDU (PS 3.8 9.3.4)

    Meaning of the field values is described in
    :class:`~pacsnet.exceptions.AssociationRejectedError`.

    :ivar result: 1 (permanent) or 2 (transient)
    :ivar source: who rejected the association
    :ivar reason_diag: rejection reason, depends on `source`
    """

    pdu_type = 0x03
    fields = ('result', 'source', 'reason_diag')

    def __init__(self, result, source, reason_diag):
        super(AAssociateRjPDU, self).__init__(result, source, reason_diag)


class AReleaseRqPDU(_FixedLengthPDU):
    """A-RELEASE-RQ PDU (PS 3.8 9.3.6)"""

    pdu_type = 0x05


class AReleaseRpPDU(_FixedLengthPDU):
    """A-RELEASE-RP PDU (PS 3.8 9.3.7)"""

    pdu_type = 0x06


class AAbortPDU(_FixedLengthPDU):
    """A-ABORT PDU (PS 3.8 9.3.8)

    :ivar source: 0 if abort was requested by the service user, 2 if the
                  service provider aborted (1 is reserved)
    :ivar reason_diag: for provider aborts one of

                        * 0 - reason-not-specified
                        * 1 - unrecognized-PDU
                        * 2 - unexpected-PDU
                        * 4 - unrecognized-PDU parameter
                        * 5 - unexpected-PDU parameter
                        * 6 - invalid-PDU-parameter value
    """
    pdu_type = 0x07
    fields = ('source', 'reason_diag')

    def __init__(self, source, reason_diag):
        super(AAbortPDU, self).__init__(source, reason_diag)


class PDataTfPDU(_PDU):
    """P-DATA-TF PDU (PS 3.8 9.3.5)

    :ivar data_value_items: non-empty list of
                            :class:`PresentationDataValueItem`
    """

    pdu_type = 0x04

    def __init__(self, data_value_items):
        self.data_value_items = data_value_items

    def __repr__(self):
        return 'PDataTfPDU({0!r})'.format(self.data_value_items)

    @property
    def pdu_length(self):
        return sum(item.total_length() for item in self.data_value_items)

    def encode(self):
        return PDU_HEADER.pack(self.pdu_type, 0x00, self.pdu_length) \
            + b''.join(item.encode() for item in self.data_value_items)

    @classmethod
    def decode(cls, rawstring):
        """Builds P-DATA-TF from its complete binary representation

        :raises exceptions.PDUProcessingError: if PDV items do not add up
                                               to the PDU length
        """
        stream = io.BytesIO(rawstring)
        _, _, pdu_length = _read_header(stream, PDU_HEADER)
        items = []
        consumed = 0
        while consumed < pdu_length:
            item = PresentationDataValueItem.decode(stream)
            consumed += item.total_length()
            items.append(item)
        if consumed != pdu_length or not items:
            raise exceptions.PDUProcessingError('Malformed P-DATA-TF PDU')
        return cls(items)


class _UIDItem(_Item):
    """Item holding a single UID: application context name, abstract
    syntax or transfer syntax.

    :ivar name: UID
    """

    def __init__(self, name):
        self.name = uid.UID(name)

    def __repr__(self):
        return '{0}({1!r})'.format(type(self).__name__, str(self.name))

    @property
    def item_length(self):
        return len(self.name)

    def encode(self):
        return ITEM_HEADER.pack(self.item_type, 0x00, self.item_length) \
            + self.name.encode('ascii')

    @classmethod
    def decode(cls, stream):
        item_type, _, item_length = _read_header(stream, ITEM_HEADER)
        if item_type != cls.item_type:
            raise exceptions.PDUProcessingError(
                'Unexpected item type 0x{0:02X}, expected 0x{1:02X}'.format(
                    item_type, cls.item_type))
        name = userdataitems.read_exact(stream, item_length).decode('ascii')
        return cls(name.rstrip('\0 '))


class ApplicationContextItem(_UIDItem):
    """Application Context Item (PS 3.8 9.3.2.1)"""

    item_type = 0x10

    @property
    def context_name(self):
        """Application context name (OID)"""
        return self.name


class AbstractSyntaxSubItem(_UIDItem):
    """Abstract Syntax Sub-Item (PS 3.8 9.3.2.2.1)"""

    item_type = 0x30


class TransferSyntaxSubItem(_UIDItem):
    """Transfer Syntax Sub-Item (PS 3.8 9.3.2.2.2)"""

    item_type = 0x40


# item header, context ID and three reserved/result bytes
_CONTEXT_HEADER = struct.Struct('>B B H B B B B')


def _read_context_item(stream):
    """Reads presentation context item header and body

    :return: unpacked header and a stream over the sub-items
    """
    header = _read_header(stream, _CONTEXT_HEADER)
    item_length = header[2]
    if item_length < 4:
        raise exceptions.PDUProcessingError(
            'Invalid presentation context item length: {0}'.format(item_length))
    return header, io.BytesIO(userdataitems.read_exact(stream, item_length - 4))


class PresentationContextItemRQ(_Item):
    """Proposed presentation context (PS 3.8 9.3.2.2)

    :ivar context_id: odd number in range 1-255
    :ivar abs_sub_item: proposed abstract syntax
    :ivar ts_sub_items: proposed transfer syntaxes, most preferred first
    """

    item_type = 0x20

    def __init__(self, context_id, abs_sub_item, ts_sub_items):
        self.context_id = context_id
        self.abs_sub_item = abs_sub_item
        self.ts_sub_items = ts_sub_items

    def __repr__(self):
        return 'PresentationContextItemRQ({0}, {1!r}, {2!r})'.format(
            self.context_id, self.abs_sub_item, self.ts_sub_items)

    @property
    def item_length(self):
        sub_items = [self.abs_sub_item] + list(self.ts_sub_items)
        return 4 + sum(item.total_length() for item in sub_items)

    def encode(self):
        head = _CONTEXT_HEADER.pack(self.item_type, 0x00, self.item_length,
                                    self.context_id, 0x00, 0x00, 0x00)
        return head + self.abs_sub_item.encode() \
            + b''.join(item.encode() for item in self.ts_sub_items)

    @classmethod
    def decode(cls, stream):
        """Reads proposed context from the stream

        Bytes after the last transfer syntax sub-item that still belong to
        the item are skipped.
        """
        header, body = _read_context_item(stream)
        context_id = header[3]
        abs_sub_item = AbstractSyntaxSubItem.decode(body)
        ts_sub_items = []
        while _peek_type(body) == TransferSyntaxSubItem.item_type:
            ts_sub_items.append(TransferSyntaxSubItem.decode(body))
        return cls(context_id, abs_sub_item, ts_sub_items)


class PresentationContextItemAC(_Item):
    """Presentation context as answered by the SCP (PS 3.8 9.3.3.2)

    :ivar context_id: ID of the proposed context this answer refers to
    :ivar result_reason: 0 when accepted, see :attr:`RESULTS` for the rest
    :ivar ts_sub_item: selected transfer syntax, meaningless for rejected
                       contexts
    """

    item_type = 0x21

    ACCEPTANCE = 0
    RESULTS = {
        0: 'acceptance',
        1: 'user-rejection',
        2: 'no-reason',
        3: 'abstract-syntax-not-supported',
        4: 'transfer-syntaxes-not-supported'
    }

    def __init__(self, context_id, result_reason, ts_sub_item):
        self.context_id = context_id
        self.result_reason = result_reason
        self.ts_sub_item = ts_sub_item

    def __repr__(self):
        return 'PresentationContextItemAC({0}, {1}, {2!r})'.format(
            self.context_id, self.RESULTS.get(self.result_reason, self.result_reason),
            self.ts_sub_item)

    @property
    def accepted(self):
        return self.result_reason == self.ACCEPTANCE

    @property
    def item_length(self):
        return 4 + self.ts_sub_item.total_length()

    def encode(self):
        return _CONTEXT_HEADER.pack(self.item_type, 0x00, self.item_length,
                                    self.context_id, 0x00, self.result_reason, 0x00) \
            + self.ts_sub_item.encode()

    @classmethod
    def decode(cls, stream):
        """Reads answered context from the stream

        Rejected contexts may come without transfer syntax sub-item or with
        an empty one.
        """
        header, body = _read_context_item(stream)
        _, _, _, context_id, _, result_reason, _ = header
        if _peek_type(body) is not None:
            ts_sub_item = TransferSyntaxSubItem.decode(body)
        else:
            ts_sub_item = TransferSyntaxSubItem('')
        return cls(context_id, result_reason, ts_sub_item)


class UserInformationItem(_Item):
    """User Information Item (PS 3.8 9.3.2.3)

    :ivar user_data: sub-items from :doc:`userdataitems`; requests always
                     carry a :class:`~pacsnet.userdataitems.MaximumLengthSubItem`
    """
    item_type = 0x50

    def __init__(self, user_data):
        self.user_data = user_data

    def __repr__(self):
        return 'UserInformationItem({0!r})'.format(self.user_data)

    @property
    def item_length(self):
        # sub-items expose total_length as a property
        return sum(sub_item.total_length for sub_item in self.user_data)

    def encode(self):
        return ITEM_HEADER.pack(self.item_type, 0x00, self.item_length) \
            + b''.join(sub_item.encode() for sub_item in self.user_data)

    @staticmethod
    def sub_items(stream):
        """Reads User Information sub-items from a data stream

        Sub-items that are not known to this package are decoded as
        :class:`~pacsnet.userdataitems.GenericUserDataSubItem`.

        :param stream: raw data stream
        :type stream: IO[bytes]
        :yield: User Information sub-item
        """
        item_type = _peek_type(stream)
        while item_type is not None:
            factory = userdataitems.SUB_ITEM_TYPES.get(
                item_type, userdataitems.GenericUserDataSubItem)
            yield factory.decode(stream)
            item_type = _peek_type(stream)

    @classmethod
    def decode(cls, stream):
        _, _, item_length = _read_header(stream, ITEM_HEADER)
        # sub-items must not run past the item
        sub_stream = io.BytesIO(userdataitems.read_exact(stream, item_length))
        return cls(list(cls.sub_items(sub_stream)))


class PresentationDataValueItem(object):
    """Presentation Data Value Item (PS 3.8 9.3.5.1)

    First byte of the `data_value` is a message control header
    (PS 3.8 E.2): bit 0 is set for command fragments, bit 1 is set for the
    last fragment.

    :ivar context_id: presentation context ID
    :ivar data_value: item value (bytes), including message control header
    """
    header = struct.Struct('>I B')

    COMMAND_FLAG = 0x01
    LAST_FRAGMENT_FLAG = 0x02

    def __init__(self, context_id, data_value):
        # type: (int,bytes) -> None
        self.context_id = context_id
        self.data_value = data_value

    def __repr__(self):
        return 'PresentationDataValueItem(context_id={0}, ' \
               'control=0x{1:02X}, length={2})'.format(
                   self.context_id, self.data_value[0] if self.data_value else 0,
                   len(self.data_value))

    @property
    def is_command(self):
        return bool(self.data_value[0] & self.COMMAND_FLAG)

    @property
    def is_last(self):
        return bool(self.data_value[0] & self.LAST_FRAGMENT_FLAG)

    @property
    def fragment(self):
        """Fragment data without message control header"""
        return self.data_value[1:]

    @property
    def item_length(self):
        # context ID byte is counted, the 4 byte length field is not
        return len(self.data_value) + 1

    def encode(self):
        return self.header.pack(self.item_length, self.context_id) + self.data_value

    @classmethod
    def decode(cls, stream):
        """Reads PDV item, leaving its value as raw bytes"""
        item_length, context_id = _read_header(stream, cls.header)
        if item_length < 2:
            raise exceptions.PDUProcessingError(
                'Invalid presentation data value item length: {0}'.format(item_length))
        return cls(context_id, userdataitems.read_exact(stream, item_length - 1))

    def total_length(self):
        return 4 + self.item_length


VARIABLE_ITEM_TYPES = {
    ApplicationContextItem.item_type: ApplicationContextItem,
    PresentationContextItemRQ.item_type: PresentationContextItemRQ,
    PresentationContextItemAC.item_type: PresentationContextItemAC,
    UserInformationItem.item_type: UserInformationItem,
}

PDU_TYPES = {
    AAssociateRqPDU.pdu_type: AAssociateRqPDU,
    AAssociateAcPDU.pdu_type: AAssociateAcPDU,
    AAssociateRjPDU.pdu_type: AAssociateRjPDU,
    PDataTfPDU.pdu_type: PDataTfPDU,
    AReleaseRqPDU.pdu_type: AReleaseRqPDU,
    AReleaseRpPDU.pdu_type: AReleaseRpPDU,
    AAbortPDU.pdu_type: AAbortPDU,
}


def decode_pdu(raw_pdu):
    """Decodes complete PDU (header included)

    :param raw_pdu: raw PDU bytes
    :raises exceptions.PDUProcessingError: if PDU type is unknown or PDU
                                           could not be decoded
    :return: decoded PDU
    """
    if len(raw_pdu) < PDU_HEADER.size:
        raise exceptions.PDUProcessingError('PDU is shorter than its header')
    factory = PDU_TYPES.get(raw_pdu[0])
    if factory is None:
        raise exceptions.PDUProcessingError('Unknown PDU type: 0x{0:02X}'.format(raw_pdu[0]))
    try:
        return factory.decode(raw_pdu)
    except (struct.error, ValueError, UnicodeDecodeError) as exc:
        raise exceptions.PDUProcessingError(
            'Failed to decode {0}: {1}'.format(factory.__name__, exc))
