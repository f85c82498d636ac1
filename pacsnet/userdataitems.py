# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
"""
Sub-items of the User Information item (PS 3.8 Annex D).

Every sub-item has the same 4 byte header (type, reserved, length), so
classes here only describe their body: :meth:`_SubItem.body` builds it and
``from_body`` parses it back.

Only sub-items that a requesting application entity needs are interpreted:
maximum length, implementation identification and user identity. Any other
sub-item that remote side may put into A-ASSOCIATE-AC (role selection,
asynchronous operations window, extended negotiation) is kept as
:class:`GenericUserDataSubItem`.
"""

import io
import struct

from pydicom import uid

from . import exceptions

SUB_ITEM_HEADER = struct.Struct('>B B H')

_UINT16 = struct.Struct('>H')
_UINT32 = struct.Struct('>I')


def read_exact(stream, length):
    """Reads exactly `length` bytes from the stream

    :raises exceptions.PDUProcessingError: if stream ended prematurely
    """
    data = stream.read(length)
    if len(data) != length:
        raise exceptions.PDUProcessingError(
            'Unexpected end of PDU data: expected {0} bytes, got {1}'.format(
                length, len(data)))
    return data


def _read_sub_item(stream):
    item_type, reserved, item_length = SUB_ITEM_HEADER.unpack(
        read_exact(stream, SUB_ITEM_HEADER.size))
    return item_type, reserved, read_exact(stream, item_length)


class _SubItem(object):
    item_type = None

    def body(self):
        """Encoded sub-item value, without the header"""
        raise NotImplementedError()

    @property
    def item_length(self):
        return len(self.body())

    @property
    def total_length(self):
        return SUB_ITEM_HEADER.size + self.item_length

    def encode(self):
        body = self.body()
        return SUB_ITEM_HEADER.pack(self.item_type, self.reserved, len(body)) + body

    @classmethod
    def decode(cls, stream):
        _, reserved, body = _read_sub_item(stream)
        return cls.from_body(body, reserved)


class MaximumLengthSubItem(_SubItem):
    """Maximum Length Negotiation (PS 3.8 D.1)

    Sent by both sides: each one announces the largest P-DATA-TF it is
    willing to receive.

    :ivar maximum_length_received: P-DATA-TF PDUs size limit, 0 means no limit
    """
    item_type = 0x51

    def __init__(self, maximum_length_received, reserved=0x00):
        # type: (int,int) -> None
        self.reserved = reserved
        self.maximum_length_received = maximum_length_received

    def __repr__(self):
        return 'MaximumLengthSubItem({0})'.format(self.maximum_length_received)

    def body(self):
        return _UINT32.pack(self.maximum_length_received)

    @classmethod
    def from_body(cls, body, reserved):
        if len(body) != _UINT32.size:
            raise exceptions.PDUProcessingError(
                'Invalid maximum length sub-item length: {0}'.format(len(body)))
        return cls(_UINT32.unpack(body)[0], reserved)


class _TextSubItem(_SubItem):
    """Sub-item with a single ASCII string as its body"""

    def __init__(self, value, reserved=0x00):
        self.reserved = reserved
        self.value = value

    def __repr__(self):
        return '{0}({1!r})'.format(type(self).__name__, str(self.value))

    def body(self):
        return self.value.encode('ascii')

    @classmethod
    def from_body(cls, body, reserved):
        return cls(body.decode('ascii').rstrip('\x00 '), reserved)


class ImplementationClassUIDSubItem(_TextSubItem):
    """Implementation Class UID (PS 3.8 D.3.3.2)"""
    item_type = 0x52

    @property
    def implementation_class_uid(self):
        return uid.UID(self.value)


class ImplementationVersionNameSubItem(_TextSubItem):
    """Implementation Version Name (PS 3.8 D.3.3.2), up to 16 characters"""
    item_type = 0x55

    @property
    def implementation_version_name(self):
        return self.value


class UserIdentityNegotiationSubItem(_SubItem):
    """User Identity sub-item of A-ASSOCIATE-RQ (PS 3.8 D.3.3.7.1)

    Only username (type 1) and username/password (type 2) identification
    are produced by this package.

    :ivar primary_field: user name
    :ivar secondary_field: password, empty unless `user_identity_type` is 2
    :ivar user_identity_type: kind of identification
    :ivar positive_response_req: 1 if SCP should confirm the identity
    """
    item_type = 0x58

    USERNAME = 1
    USERNAME_AND_PASSWORD = 2

    def __init__(self, primary_field, secondary_field='', user_identity_type=2,
                 positive_response_req=0, reserved=0x00):
        # type: (str,str,int,int,int) -> None
        self.reserved = reserved
        self.user_identity_type = user_identity_type
        self.positive_response_req = positive_response_req
        self._primary_field = primary_field.encode('utf8')
        self._secondary_field = secondary_field.encode('utf8')

    @classmethod
    def from_credentials(cls, username, password=None):
        """Creates sub-item for provided credentials

        :param username: user name
        :param password: optional password
        """
        if password:
            return cls(username, password, cls.USERNAME_AND_PASSWORD)
        return cls(username, '', cls.USERNAME)

    @property
    def primary_field(self):
        return self._primary_field.decode('utf8')

    @property
    def secondary_field(self):
        return self._secondary_field.decode('utf8')

    def __repr__(self):
        # password is never shown
        return 'UserIdentityNegotiationSubItem(user={0!r}, type={1}, ' \
               'response_requested={2})'.format(self.primary_field, self.user_identity_type,
                                                self.positive_response_req)

    def body(self):
        return b''.join([struct.pack('>B B', self.user_identity_type,
                                     self.positive_response_req),
                         _UINT16.pack(len(self._primary_field)), self._primary_field,
                         _UINT16.pack(len(self._secondary_field)), self._secondary_field])

    @classmethod
    def from_body(cls, body, reserved):
        stream = io.BytesIO(body)
        user_identity_type, positive_response_req = struct.unpack('>B B', read_exact(stream, 2))
        fields = []
        for _ in range(2):
            length, = _UINT16.unpack(read_exact(stream, _UINT16.size))
            fields.append(read_exact(stream, length).decode('utf8'))
        return cls(fields[0], fields[1], user_identity_type, positive_response_req, reserved)


class UserIdentityNegotiationSubItemAc(_SubItem):
    """User Identity sub-item of A-ASSOCIATE-AC (PS 3.8 D.3.3.7.2)

    Comes back only when the request asked for a positive response.

    :ivar server_response: server response, empty for username based
                           identification
    """
    item_type = 0x59

    def __init__(self, server_response, reserved=0x00):
        # type: (bytes,int) -> None
        self.reserved = reserved
        self.server_response = server_response

    def __repr__(self):
        return 'UserIdentityNegotiationSubItemAc({0!r})'.format(self.server_response)

    def body(self):
        return _UINT16.pack(len(self.server_response)) + self.server_response

    @classmethod
    def from_body(cls, body, reserved):
        stream = io.BytesIO(body)
        length, = _UINT16.unpack(read_exact(stream, _UINT16.size))
        return cls(read_exact(stream, length), reserved)


class GenericUserDataSubItem(_SubItem):
    """Sub-item this package does not interpret, body is kept as is"""

    def __init__(self, item_type, user_data, reserved=0x00):
        # type: (int,bytes,int) -> None
        self.item_type = item_type
        self.reserved = reserved
        self.user_data = user_data

    def __repr__(self):
        return 'GenericUserDataSubItem(0x{0:02X}, {1!r})'.format(self.item_type, self.user_data)

    def body(self):
        return self.user_data

    @classmethod
    def decode(cls, stream):
        item_type, reserved, body = _read_sub_item(stream)
        return cls(item_type, body, reserved)


SUB_ITEM_TYPES = {
    MaximumLengthSubItem.item_type: MaximumLengthSubItem,
    ImplementationClassUIDSubItem.item_type: ImplementationClassUIDSubItem,
    ImplementationVersionNameSubItem.item_type: ImplementationVersionNameSubItem,
    UserIdentityNegotiationSubItem.item_type: UserIdentityNegotiationSubItem,
    UserIdentityNegotiationSubItemAc.item_type: UserIdentityNegotiationSubItemAc,
}
