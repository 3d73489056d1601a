# Licensed under the GPLv3 - see LICENSE
"""
Definitions for backup stream record headers.

Each record of a backup stream starts with a header of five little-endian
32-bit words (``WIN32_STREAM_ID``), giving the stream type, its attributes,
the 64-bit size of the data that follows, and the size of a stream name::

    offset 0   u32  stream_id
    offset 4   u32  stream_attributes
    offset 8   i64  stream_size
    offset 16  u32  stream_name_size

For alternate data streams, the UTF-16-LE name (``:<name>:$DATA``) follows
directly.  For sparse blocks, the header is followed by the 64-bit offset
of the block within the file, which is included in ``stream_size`` but not
in the logical `~ntbackup.backup.header.BackupHeader.size`.
"""
import enum
import io
import logging
import struct

from ..base.header import HeaderParser, WordHeaderBase, IncompleteHeaderError
from .names import encode_stream_name, decode_stream_name


__all__ = ['StreamType', 'StreamAttributes', 'BackupHeaderError',
           'OddNameLengthError', 'EmptyStreamNameError', 'BackupHeader']

logger = logging.getLogger(__name__)

SPARSE_OFFSET_STRUCT = struct.Struct('<Q')
"""Struct instance that packs/unpacks the offset of a sparse block."""

MAX_SIZE = (1 << 63) - 1


class StreamType(enum.IntEnum):
    """Type of data in a backup stream record."""
    INVALID = 0
    DATA = 1
    EA_DATA = 2
    SECURITY_DATA = 3
    ALTERNATE_DATA = 4
    LINK = 5
    PROPERTY_DATA = 6
    OBJECT_ID = 7
    REPARSE_DATA = 8
    SPARSE_BLOCK = 9
    TXFS_DATA = 10
    GHOSTED_FILE_EXTENTS = 11


class StreamAttributes(enum.IntFlag):
    """Properties of the data in a backup stream record."""
    NORMAL = 0
    MODIFIED_WHEN_READ = 1
    CONTAINS_SECURITY = 2
    CONTAINS_PROPERTIES = 4
    SPARSE = 8
    CONTAINS_GHOSTED_FILE_EXTENTS = 16


class BackupHeaderError(ValueError):
    """Malformed backup stream header."""
    pass


class OddNameLengthError(BackupHeaderError):
    """Stream name size is not a whole number of UTF-16 characters."""
    pass


class EmptyStreamNameError(BackupHeaderError):
    """Alternate data stream without a (valid) name."""
    pass


class BackupHeader(WordHeaderBase):
    """Header of a record in a backup stream.

    Parameters
    ----------
    words : tuple or list of int, or None
        The five words of the fixed part of the header.  If given as a
        tuple, the header is immutable.  If `None`, set to a list of zeros
        for later initialisation (and skip any verification).
    name : str, optional
        Bare name of an alternate data stream.
    sparse_offset : int, optional
        Offset within the file of the data of a sparse block.
    verify : bool, optional
        Whether to do basic verification of integrity.  Default: `True`.

    Notes
    -----
    The ``active`` attribute is set on headers read with
    `~ntbackup.backup.header.BackupHeader.fromfile`.  The stream pipelines
    clear it once the first payload of the record has been passed on, so
    that a transform hook can tell whether the header bytes still need to
    be emitted.
    """

    _struct = struct.Struct('<5I')

    _header_parser = HeaderParser(
        (('stream_id', (0, 0, 32, 0)),
         ('stream_attributes', (1, 0, 32, 0)),
         ('stream_size', (2, 0, 64, 0)),
         ('stream_name_size', (4, 0, 32, 0))))

    _properties = ('stream_type', 'attributes', 'size', 'name',
                   'sparse_offset')

    def __init__(self, words, name='', sparse_offset=0, verify=True):
        self._name = name
        self._sparse_offset = sparse_offset
        self.active = False
        super().__init__(words, verify=verify)

    def verify(self):
        super().verify()
        if self['stream_id'] not in StreamType._value2member_map_:
            raise BackupHeaderError("unknown stream type {0}."
                                    .format(self['stream_id']))
        if self['stream_size'] > MAX_SIZE:
            raise BackupHeaderError("stream size cannot be negative.")
        if self.stream_type == StreamType.ALTERNATE_DATA:
            if self['stream_name_size'] % 2:
                raise OddNameLengthError("stream name size {0} is odd."
                                         .format(self['stream_name_size']))
            if not self.name:
                raise EmptyStreamNameError("alternate data stream "
                                           "needs a name.")
        elif self.stream_type == StreamType.SPARSE_BLOCK:
            if self['stream_size'] < SPARSE_OFFSET_STRUCT.size:
                raise BackupHeaderError("sparse block too small to hold "
                                        "its offset.")

    def copy(self, **kwargs):
        """Create a mutable and independent copy of the header."""
        new = super().copy(name=self._name,
                           sparse_offset=self._sparse_offset, **kwargs)
        new.active = self.active
        return new

    @property
    def stream_type(self):
        """Type of the data in this record."""
        return StreamType(self['stream_id'])

    @stream_type.setter
    def stream_type(self, stream_type):
        # Keep the logical size; the wire size depends on the type.
        size = self.size
        self['stream_id'] = StreamType(stream_type)
        self.size = size
        self._set_name_size()

    @property
    def attributes(self):
        """Properties of the data in this record."""
        return StreamAttributes(self['stream_attributes'])

    @attributes.setter
    def attributes(self, attributes):
        self['stream_attributes'] = int(attributes)

    @property
    def _extra_nbytes(self):
        """Number of bytes of type-specific data following the words."""
        stream_id = self['stream_id']
        if stream_id == StreamType.ALTERNATE_DATA:
            return self['stream_name_size']
        elif stream_id == StreamType.SPARSE_BLOCK:
            return SPARSE_OFFSET_STRUCT.size
        else:
            return 0

    @property
    def size(self):
        """Number of payload bytes following the header.

        For sparse blocks, this excludes the offset of the block, even
        though it is counted in the ``stream_size`` on the wire.
        """
        size = self['stream_size']
        if self['stream_id'] == StreamType.SPARSE_BLOCK:
            size -= SPARSE_OFFSET_STRUCT.size
        return size

    @size.setter
    def size(self, size):
        if size < 0:
            raise ValueError("size cannot be negative.")
        if self['stream_id'] == StreamType.SPARSE_BLOCK:
            size += SPARSE_OFFSET_STRUCT.size
        self['stream_size'] = size

    @property
    def name(self):
        """Name of an alternate data stream ('' for other types)."""
        return self._name

    @name.setter
    def name(self, name):
        if not self.mutable:
            raise TypeError("header is immutable. Set '.mutable` attribute"
                            " or make a copy.")
        self._name = name
        self._set_name_size()

    def _set_name_size(self):
        if self['stream_id'] == StreamType.ALTERNATE_DATA and self._name:
            self['stream_name_size'] = len(encode_stream_name(self._name))
        else:
            self['stream_name_size'] = 0

    @property
    def sparse_offset(self):
        """Offset within the file of the data of a sparse block."""
        return self._sparse_offset

    @sparse_offset.setter
    def sparse_offset(self, sparse_offset):
        if not self.mutable:
            raise TypeError("header is immutable. Set '.mutable` attribute"
                            " or make a copy.")
        if not 0 <= sparse_offset < (1 << 64):
            raise ValueError("{0} cannot be represented with 64 bits"
                             .format(sparse_offset))
        self._sparse_offset = sparse_offset

    @property
    def nbytes(self):
        """Size of the header on the wire, including any name or offset."""
        return self.base_nbytes + self._extra_nbytes

    @property
    def record_nbytes(self):
        """Size of the complete record (header plus payload) in bytes."""
        return self.nbytes + self.size

    @classmethod
    def fromfile(cls, fh, verify=True):
        """Read a record header from a file.

        The header constructed will be immutable and active.

        Parameters
        ----------
        fh : filehandle
            To read the header from.
        verify : bool, optional
            Whether to do basic verification of integrity.  Default: `True`.

        Raises
        ------
        EOFError
            If the file was at its end.
        ~ntbackup.base.header.IncompleteHeaderError
            If the file ended part-way through the header.
        OddNameLengthError
            If the stream name size of an alternate data stream is odd.
        EmptyStreamNameError
            If an alternate data stream has no valid ``:<name>:$DATA`` name.
        """
        self = super().fromfile(fh, verify=False)
        stream_id = self['stream_id']
        if stream_id == StreamType.ALTERNATE_DATA:
            name_nbytes = self['stream_name_size']
            if name_nbytes == 0:
                raise EmptyStreamNameError("alternate data stream "
                                           "without a name.")
            if name_nbytes % 2:
                raise OddNameLengthError("stream name size {0} is odd."
                                         .format(name_nbytes))
            self._name = decode_stream_name(
                cls._read_extra(fh, name_nbytes))
            if not self._name:
                raise EmptyStreamNameError("stream name is not of the form "
                                           "':<name>:$DATA'.")

        elif stream_id == StreamType.SPARSE_BLOCK:
            self._sparse_offset, = SPARSE_OFFSET_STRUCT.unpack(
                cls._read_extra(fh, SPARSE_OFFSET_STRUCT.size))

        if verify:
            self.verify()

        self.active = True
        logger.debug("decoded %r", self)
        return self

    @staticmethod
    def _read_extra(fh, nbytes):
        s = fh.read(nbytes)
        if len(s) != nbytes:
            raise IncompleteHeaderError("read {0} of {1} bytes following "
                                        "the header words."
                                        .format(len(s), nbytes))
        return s

    @classmethod
    def frombytes(cls, data, verify=True):
        """Decode a record header from the start of a bytes-like object."""
        return cls.fromfile(io.BytesIO(data), verify=verify)

    def tobytes(self):
        """Encode the header, including any name or sparse block offset.

        Raises
        ------
        EmptyStreamNameError
            If the header is for an alternate data stream without a name.
        """
        stream_id = self['stream_id']
        if stream_id == StreamType.ALTERNATE_DATA:
            if not self._name:
                raise EmptyStreamNameError("alternate data stream "
                                           "needs a name.")
            extra = encode_stream_name(self._name)
        elif stream_id == StreamType.SPARSE_BLOCK:
            extra = SPARSE_OFFSET_STRUCT.pack(self._sparse_offset)
        else:
            extra = b''

        words = list(self.words)
        self._header_parser.setters['stream_name_size'](
            words, len(extra) if stream_id == StreamType.ALTERNATE_DATA else 0)
        return self._struct.pack(*words) + extra

    def __eq__(self, other):
        return (super().__eq__(other)
                and self._name == other._name
                and self._sparse_offset == other._sparse_offset)

    def _repr_value(self, key, value):
        if key == 'stream_id':
            try:
                return StreamType(value).name
            except ValueError:
                pass
        elif key == 'stream_attributes':
            return hex(value)
        return super()._repr_value(key, value)

    def __repr__(self):
        base = super().__repr__()[:-1]
        indent = ",\n  " + " " * len(self.__class__.__name__)
        if self['stream_id'] == StreamType.ALTERNATE_DATA:
            base += f"{indent}name: {self._name!r}"
        elif self['stream_id'] == StreamType.SPARSE_BLOCK:
            base += f"{indent}sparse_offset: {self._sparse_offset}"
        return base + ">"
