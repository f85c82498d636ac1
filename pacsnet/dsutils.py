# Copyright (c) 2021 Pavel 'Blane' Tuchin
# Copyright (c) 2012 Patrice Munger
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.
#
"""
Helper module that provides function for converting datasets or dataset elements into
bytes and back.

Only little endian transfer syntaxes are used on the wire by this package
(Implicit VR Little Endian and Explicit VR Little Endian), but encoding functions
accept byte order for completeness.

Before a byte string is handed over to pydicom, :func:`decode` walks all element
headers (including nested sequence items) and makes sure that every declared
length fits into the buffer. This way a truncated or corrupted dataset is
reported as :class:`~pacsnet.exceptions.MalformedDatasetError` instead of
silently producing a shorter dataset.
"""
import io
import logging
import struct

import pydicom
from pydicom import datadict
from pydicom import filebase
from pydicom import filereader
from pydicom import filewriter

from . import exceptions

LOGGER = logging.getLogger('pacsnet.dsutils')

UNDEFINED_LENGTH = 0xFFFFFFFF

ITEM_TAG = 0xFFFEE000
ITEM_DELIMITATION_TAG = 0xFFFEE00D
SEQUENCE_DELIMITATION_TAG = 0xFFFEE0DD

# VRs that use 2 reserved bytes and 4-byte length in explicit VR encoding
LONG_VRS = frozenset([b'OB', b'OD', b'OF', b'OL', b'OV', b'OW', b'SQ', b'SV',
                      b'UC', b'UN', b'UR', b'UT', b'UV'])


def decode(rawstr, is_implicit_vr, is_little_endian):
    # type: (bytes,bool,bool) -> pydicom.Dataset
    """Decodes dataset from raw bytes

    :param rawstr: raw bytes, containing dataset
    :type rawstr: bytes
    :param is_implicit_vr: is dataset in implicit VR
    :type is_implicit_vr: bool
    :param is_little_endian: is dataset little endian-encoded
    :type is_little_endian: bool
    :raises exceptions.MalformedDatasetError: if dataset structure is broken
    :return: decoded dataset
    :rtype: pydicom.Dataset
    """
    end = check_structure(rawstr, is_implicit_vr, is_little_endian)
    if end is not None:
        partial = _read(rawstr[:end], is_implicit_vr, is_little_endian)
        raise exceptions.MalformedDatasetError(
            'Dataset is truncated at offset {0} of {1}'.format(end, len(rawstr)),
            partial)
    return _read(rawstr, is_implicit_vr, is_little_endian)


def decode_for(rawstr, transfer_syntax):
    """Decodes dataset encoded with provided transfer syntax

    :param rawstr: raw bytes, containing dataset
    :param transfer_syntax: transfer syntax UID (pydicom.uid.UID)
    :return: decoded dataset
    """
    return decode(rawstr, transfer_syntax.is_implicit_VR, transfer_syntax.is_little_endian)


def encode(ds, is_implicit_vr, is_little_endian):
    # type: (pydicom.Dataset,bool,bool) -> bytes
    """Encoded dataset into raw bytes

    Elements are written in ascending tag order, values are padded to even length.
    Padding of text values is removed again by :func:`decode`, but binary
    values (OB, UN and alike) of odd length come back one NUL byte longer.
    This is why Encapsulated PDF instances carry ``EncapsulatedDocumentLength``
    next to the document itself.

    :param ds: dataset to encode
    :type ds: pydicom.Dataset
    :param is_implicit_vr: encode using implicit VR
    :type is_implicit_vr: bool
    :param is_little_endian: encode as little endian
    :type is_little_endian: bool
    :return: dataset encoded into raw bytes
    :rtype: bytes
    """
    fp = filebase.DicomBytesIO()
    fp.is_implicit_VR = is_implicit_vr
    fp.is_little_endian = is_little_endian
    filewriter.write_dataset(fp, ds)
    rawstr = fp.getvalue()
    fp.close()
    return rawstr


def encode_for(ds, transfer_syntax):
    """Encodes dataset using provided transfer syntax

    :param ds: dataset to encode
    :param transfer_syntax: transfer syntax UID (pydicom.uid.UID)
    :return: dataset encoded into raw bytes
    """
    return encode(ds, transfer_syntax.is_implicit_VR, transfer_syntax.is_little_endian)


def encode_element(elem, is_implicit_vr, is_little_endian):
    # type: (pydicom.DataElement,bool,bool) -> bytes
    """Encodes dataset element into raw bytes

    :param elem: dataset element to encode
    :type elem: pydicom.DataElement
    :param is_implicit_vr: encode using implicit VR
    :type is_implicit_vr: bool
    :param is_little_endian: encode as little endian
    :type is_little_endian: bool
    :return: dataset element encoded into raw bytes
    :rtype: bytes
    """
    fp = filebase.DicomBytesIO()
    fp.is_implicit_VR = is_implicit_vr
    fp.is_little_endian = is_little_endian
    filewriter.write_data_element(fp, elem)
    rawstr = fp.getvalue()
    fp.close()
    return rawstr


def check_structure(rawstr, is_implicit_vr, is_little_endian):
    # type: (bytes,bool,bool) -> int
    """Walks element headers of the encoded dataset.

    :param rawstr: raw bytes, containing dataset
    :return: ``None`` if all declared lengths fit into the buffer, otherwise
             offset of the last complete top-level element
    """
    walker = _HeaderWalker(rawstr, is_implicit_vr, is_little_endian)
    try:
        walker.walk_dataset(0, len(rawstr))
    except _Truncated:
        return walker.last_complete
    return None


def _read(rawstr, is_implicit_vr, is_little_endian):
    fp = io.BytesIO(rawstr)
    try:
        return filereader.read_dataset(fp, is_implicit_vr, is_little_endian)
    except (struct.error, ValueError, EOFError, NotImplementedError) as exc:
        raise exceptions.MalformedDatasetError('Failed to decode dataset: {0}'.format(exc))


class _Truncated(Exception):
    pass


class _HeaderWalker(object):
    """Element header walker used by :func:`check_structure`

    :ivar last_complete: end offset of the last complete top-level element
    """

    def __init__(self, rawstr, is_implicit_vr, is_little_endian):
        self.rawstr = rawstr
        self.is_implicit_vr = is_implicit_vr
        self.endian = '<' if is_little_endian else '>'
        self.last_complete = 0
        self._depth = 0

    def _unpack(self, fmt, offset, limit):
        size = struct.calcsize(fmt)
        if offset + size > limit:
            raise _Truncated()
        return struct.unpack_from(self.endian + fmt, self.rawstr, offset)

    def _tag(self, offset, limit):
        group, elem = self._unpack('HH', offset, limit)
        return (group << 16) | elem

    def walk_dataset(self, offset, limit, delimited=False):
        """Walks elements until limit or (if delimited) until item delimiter

        :return: offset right after the last walked element (or delimiter)
        """
        while offset < limit:
            tag = self._tag(offset, limit)
            if tag == ITEM_DELIMITATION_TAG and delimited:
                return offset + 8
            offset = self.walk_element(tag, offset, limit)
            if self._depth == 0:
                self.last_complete = offset
        if delimited:
            raise _Truncated()
        return offset

    def walk_element(self, tag, offset, limit):
        if self.is_implicit_vr or (tag >> 16) == 0xFFFE:
            vr = None
            length, = self._unpack('I', offset + 4, limit)
            value_offset = offset + 8
        else:
            vr = self.rawstr[offset + 4:offset + 6]
            if len(vr) < 2:
                raise _Truncated()
            if vr in LONG_VRS:
                length, = self._unpack('I', offset + 8, limit)
                value_offset = offset + 12
            else:
                length, = self._unpack('H', offset + 6, limit)
                value_offset = offset + 8

        if length == UNDEFINED_LENGTH:
            return self._walk_undefined(value_offset, limit, vr)

        end = value_offset + length
        if end > limit:
            raise _Truncated()
        if vr == b'SQ' or (vr is None and self._is_sequence(tag)):
            self._walk_items(value_offset, end)
        return end

    def _walk_items(self, offset, limit):
        self._depth += 1
        try:
            while offset < limit:
                tag = self._tag(offset, limit)
                length, = self._unpack('I', offset + 4, limit)
                offset += 8
                if tag == SEQUENCE_DELIMITATION_TAG:
                    return offset
                if tag != ITEM_TAG:
                    raise _Truncated()
                if length == UNDEFINED_LENGTH:
                    offset = self.walk_dataset(offset, limit, delimited=True)
                else:
                    if offset + length > limit:
                        raise _Truncated()
                    self.walk_dataset(offset, offset + length)
                    offset += length
            return offset
        finally:
            self._depth -= 1

    def _walk_undefined(self, offset, limit, vr):
        # Undefined length: sequence (or encapsulated data), terminated by
        # Sequence Delimitation Item
        self._depth += 1
        try:
            while True:
                tag = self._tag(offset, limit)
                length, = self._unpack('I', offset + 4, limit)
                offset += 8
                if tag == SEQUENCE_DELIMITATION_TAG:
                    return offset
                if tag != ITEM_TAG:
                    raise _Truncated()
                if length == UNDEFINED_LENGTH:
                    offset = self.walk_dataset(offset, limit, delimited=True)
                    continue
                if offset + length > limit:
                    raise _Truncated()
                if vr in (None, b'SQ', b'UN'):
                    self.walk_dataset(offset, offset + length)
                offset += length
        finally:
            self._depth -= 1

    @staticmethod
    def _is_sequence(tag):
        try:
            return datadict.dictionary_VR(tag) == 'SQ'
        except KeyError:
            return False
