# Licensed under the GPLv3 - see LICENSE
import io
import itertools
import struct

import pytest

from ..header import HeaderParser, WordHeaderBase, IncompleteHeaderError
from ..base import (
    SkipHeaderError, RecordBoundaryReached, WriteStallError,
    PipelineState, BackupContext,
    default_handler, default_write_callback,
    FileBase, StreamReaderBase, StreamWriterBase, FileOpener)


class BareHeader(WordHeaderBase):
    """Header with just a kind and payload size."""
    _struct = struct.Struct('<2I')
    _header_parser = HeaderParser(
        (('kind', (0, 0, 32, 0)),
         ('size', (1, 0, 32, 0))))

    def __init__(self, words, verify=True):
        self.active = False
        super().__init__(words, verify=verify)

    @property
    def size(self):
        return self['size']

    @property
    def nbytes(self):
        return self.base_nbytes

    @classmethod
    def fromfile(cls, fh, verify=True):
        self = super().fromfile(fh, verify=verify)
        self.active = True
        return self

    @classmethod
    def frombytes(cls, data, verify=True):
        return cls.fromfile(io.BytesIO(data), verify=verify)


def bare_record(kind, payload):
    return struct.pack('<2I', kind, len(payload)) + payload


class BareFileReader(FileBase):
    pass


class BareFileWriter(FileBase):
    pass


class BareStreamReader(StreamReaderBase):
    _header_class = BareHeader


class BareStreamWriter(StreamWriterBase):
    _header_class = BareHeader

    def __init__(self, fh_raw, *, parrot='alive', **kwargs):
        if parrot == 'dead':
            raise ValueError('parrot is dead')
        super().__init__(fh_raw, **kwargs)


class FramedBytesIO(io.BytesIO):
    """In-memory file whose relative seeks stop at a given boundary."""
    boundary = None

    def seek(self, offset, whence=0):
        if whence != 1:
            return super().seek(offset, whence)
        if self.boundary is not None and offset >= self.boundary:
            moved = self.boundary
            super().seek(moved, 1)
            raise RecordBoundaryReached(moved)
        super().seek(offset, 1)
        return offset


class ShortWriteBytesIO(io.BytesIO):
    """In-memory file that accepts at most a given number of bytes."""
    def __init__(self, pattern):
        super().__init__()
        self.pattern = itertools.cycle(pattern)

    def write(self, data):
        nbytes = min(next(self.pattern), len(data))
        if nbytes == 0:
            return 0
        return super().write(bytes(data[:nbytes]))


class TestDefaults:
    def setup_class(cls):
        cls.header = BareHeader.frombytes(struct.pack('<2I', 1, 3))

    def test_default_handler(self):
        context = BackupContext(self.header, 3, None)
        assert default_handler(context, b'abc') == (self.header.tobytes()
                                                    + b'abc')
        inactive = self.header.copy()
        inactive.active = False
        context = BackupContext(inactive, 3, None)
        assert default_handler(context, b'abc') == b'abc'
        error = EOFError('short')
        with pytest.raises(EOFError, match='short'):
            default_handler(BackupContext(inactive, 3, error), b'')

    def test_default_write_callback(self):
        assert default_write_callback(None) is None
        error = OSError('failure')
        assert default_write_callback(error) is error


class TestStreamReader:
    def setup_class(cls):
        cls.records = [bare_record(1, b'abcde'),
                       bare_record(2, b''),
                       bare_record(3, b'xyz')]
        cls.stream = b''.join(cls.records)

    def test_read_all(self):
        with BareStreamReader(io.BytesIO(self.stream)) as fh:
            assert fh.readable() and not fh.writable()
            assert fh.state is PipelineState.AWAITING_HEADER
            assert fh.header is None
            assert fh.read() == self.stream
            assert fh.tell() == len(self.stream)
            assert fh.read(10) == b''
        assert fh.closed
        with pytest.raises(ValueError, match='closed'):
            fh.read(1)

    def test_one_record_per_call(self):
        with BareStreamReader(io.BytesIO(self.stream)) as fh:
            assert fh.read(100) == self.records[0]
            assert fh.state is PipelineState.IN_PAYLOAD
            assert fh.bytes_left == 0
            assert fh.read(100) == self.records[1]
            assert fh.read(100) == self.records[2]
            assert fh.read(100) == b''

    @pytest.mark.parametrize('count', (1, 3, 4, 7, 8, 13, 100))
    def test_chunking(self, count):
        with BareStreamReader(io.BytesIO(self.stream)) as fh:
            chunks = list(iter(lambda: fh.read(count), b''))
        assert all(0 < len(chunk) <= count for chunk in chunks)
        assert b''.join(chunks) == self.stream

    def test_header_before_payload(self):
        # With a buffer too small for header and payload, the header
        # is emitted by itself, without calling the handler.
        calls = []

        def handler(context, data):
            calls.append((context.header['kind'], context.header.active,
                          context.bytes_left, bytes(data)))
            return default_handler(context, data)

        with BareStreamReader(io.BytesIO(self.stream),
                              handler=handler) as fh:
            assert fh.read(4) == self.records[0][:4]
            assert calls == []
            assert fh.read(4) == self.records[0][4:8]
            assert fh.read(4) == b'abcd'
            assert fh.read(4) == b'e'
            assert calls == [(1, False, 5, b'abcd'), (1, False, 1, b'e')]
            # Header with an empty payload still passes through the handler.
            assert fh.read(8) == self.records[1]
            assert calls[-1] == (2, True, 0, b'')
            # Header with payload fitting in the buffer.
            assert fh.read(20) == self.records[2]
            assert calls[-1] == (3, True, 3, b'xyz')

    def test_readinto(self):
        buffer = bytearray(100)
        with BareStreamReader(io.BytesIO(self.stream)) as fh:
            assert fh.readinto(buffer) == len(self.records[0])
        assert buffer[:len(self.records[0])] == self.records[0]

    def test_filtering_handler(self):
        def drop_kind_1(context, data):
            if context.header['kind'] == 1:
                return b''
            return default_handler(context, data)

        with BareStreamReader(io.BytesIO(self.stream),
                              handler=drop_kind_1) as fh:
            assert fh.read() == self.records[1] + self.records[2]

    def test_handler_returning_none(self):
        with BareStreamReader(io.BytesIO(self.stream),
                              handler=lambda context, data: None) as fh:
            with pytest.raises(TypeError, match='returned None'):
                fh.read(100)

    def test_truncated_header(self):
        with BareStreamReader(io.BytesIO(self.stream[:-7])) as fh:
            assert fh.read(100) == self.records[0]
            assert fh.read(100) == self.records[1]
            with pytest.raises(IncompleteHeaderError):
                fh.read(100)

    def test_truncated_payload(self):
        stream = self.records[0][:-2]
        with BareStreamReader(io.BytesIO(stream)) as fh:
            assert fh.read(100) == stream
            with pytest.raises(EOFError, match='2 bytes left'):
                fh.read(100)
            assert isinstance(fh.last_error, EOFError)

        def lenient(context, data):
            if isinstance(context.last_error, EOFError):
                return data
            return default_handler(context, data)

        with BareStreamReader(io.BytesIO(stream), handler=lenient) as fh:
            assert fh.read() == stream

    def test_seek(self):
        fh_raw = FramedBytesIO(self.stream)
        with BareStreamReader(fh_raw) as fh:
            assert fh.seekable()
            with pytest.raises(SkipHeaderError):
                fh.seek(1)
            assert fh.state is PipelineState.AWAITING_HEADER
            assert fh.tell() == 0
            assert fh.read(1) == self.records[0][:1]
            assert fh.seek(2) == 2
            assert fh.bytes_left == 3
            assert fh.tell() == 3
            with pytest.raises(ValueError):
                fh.seek(0, 0)
            with pytest.raises(ValueError):
                fh.seek(-1)
            # Rest of the header comes first, then the remaining payload.
            assert fh.read(7) == self.records[0][1:8]
            assert fh.read(100) == b'cde'

    def test_seek_to_boundary(self):
        fh_raw = FramedBytesIO(self.stream)
        fh_raw.boundary = 5
        with BareStreamReader(fh_raw) as fh:
            assert fh.read(1) == self.records[0][:1]
            assert fh.seek(10) == 5
            assert fh.state is PipelineState.AWAITING_HEADER
            assert fh.bytes_left == 0
            assert isinstance(fh.last_error, RecordBoundaryReached)
            with pytest.raises(SkipHeaderError):
                fh.seek(1)
            assert fh.read() == (self.records[0][1:8]
                                 + self.records[1] + self.records[2])
            assert fh.last_error is None


class TestStreamWriter:
    def setup_class(cls):
        cls.records = [bare_record(1, b'abcde'),
                       bare_record(2, b''),
                       bare_record(3, b'xyz')]
        cls.stream = b''.join(cls.records)

    @pytest.mark.parametrize('count', (1, 3, 8, 13, 100))
    def test_chunking(self, count):
        sink = io.BytesIO()
        fh = BareStreamWriter(sink)
        assert fh.writable() and not fh.readable()
        for i in range(0, len(self.stream), count):
            chunk = self.stream[i:i+count]
            assert fh.write(chunk) == len(chunk)
        assert fh.tell() == len(self.stream)
        assert fh.state is PipelineState.AWAITING_HEADER
        assert sink.getvalue() == self.stream
        fh.close()
        assert sink.closed
        with pytest.raises(ValueError, match='closed'):
            fh.write(b'')
        # Closing again has no effect.
        fh.close()

    def test_partial_header(self):
        sink = io.BytesIO()
        fh = BareStreamWriter(sink)
        assert fh.write(self.stream[:5]) == 5
        assert fh.state is PipelineState.AWAITING_HEADER
        assert sink.getvalue() == b''
        assert fh.write(self.stream[5:10]) == 5
        assert fh.state is PipelineState.IN_PAYLOAD
        assert fh.bytes_left == 3
        assert sink.getvalue() == self.stream[:10]
        with pytest.warns(UserWarning, match='incomplete record'):
            fh.close()

    def test_warn_on_partial_header_at_close(self):
        fh = BareStreamWriter(io.BytesIO())
        fh.write(self.stream[:13])
        fh.write(self.stream[13:15])
        with pytest.warns(UserWarning, match='2 header bytes buffered'):
            fh.close()

    def test_handler(self):
        calls = []

        def upper(context, data):
            calls.append((context.header['kind'], context.header.active,
                          context.bytes_left, bytes(data)))
            data = bytes(data).upper()
            if context.header.active:
                data = context.header.tobytes() + data
            return data

        sink = io.BytesIO()
        with BareStreamWriter(sink, handler=upper) as fh:
            fh.write(self.stream[:11])
            fh.write(self.stream[11:])
            result = sink.getvalue()
        assert result == self.stream.upper()
        assert calls == [(1, True, 5, b'abc'), (1, False, 2, b'de'),
                         (2, True, 0, b''), (3, True, 3, b'xyz')]

    def test_short_writes(self):
        sink = ShortWriteBytesIO((3, 0, 1))
        errors = []

        def callback(error):
            errors.append(error)
            return error

        with BareStreamWriter(sink, write_callback=callback) as fh:
            fh.write(self.stream)
            result = sink.getvalue()
        assert result == self.stream
        assert len(errors) > 3
        assert all(error is None for error in errors)

    def test_stall(self):
        attempts = []

        def callback(error):
            attempts.append(error)

        sink = ShortWriteBytesIO((0,))
        fh = BareStreamWriter(sink, write_callback=callback,
                              max_write_retries=3)
        with pytest.raises(WriteStallError, match='4 attempts'):
            fh.write(self.stream)
        assert len(attempts) == 4
        with pytest.warns(UserWarning):
            fh.close()

    def test_sink_error(self):
        class FlakyBytesIO(io.BytesIO):
            failures = 1

            def write(self, data):
                if self.failures:
                    self.failures -= 1
                    raise OSError('flaky')
                return super().write(data)

        sink = FlakyBytesIO()
        fh = BareStreamWriter(sink)
        with pytest.raises(OSError, match='flaky'):
            fh.write(self.stream)
        assert isinstance(fh.last_error, OSError)

        errors = []

        def retry(error):
            errors.append(error)
            return None

        sink = FlakyBytesIO()
        with BareStreamWriter(sink, write_callback=retry) as fh:
            fh.write(self.stream)
            assert fh.last_error is None
            result = sink.getvalue()
        assert result == self.stream
        assert isinstance(errors[0], OSError)

    def test_seek(self):
        sink = FramedBytesIO()
        with BareStreamWriter(sink) as fh:
            with pytest.raises(SkipHeaderError):
                fh.seek(1)
            fh.write(self.stream[:8])
            assert sink.getvalue() == b''
            # Seeking makes the header be written first.
            assert fh.seek(2) == 2
            assert sink.getvalue() == self.stream[:8]
            assert fh.bytes_left == 3
            fh.write(b'cde')
            assert fh.tell() == 13
            result = sink.getvalue()
        # The skipped bytes are left to the sink.
        assert result == self.stream[:8] + bytes(2) + self.stream[10:13]

    def test_seek_to_boundary(self):
        sink = FramedBytesIO()
        sink.boundary = 5
        with BareStreamWriter(sink) as fh:
            fh.write(self.stream[:8])
            assert fh.seek(7) == 5
            assert fh.state is PipelineState.AWAITING_HEADER
            fh.write(self.stream[13:])
            result = sink.getvalue()
        assert result == self.stream[:8] + bytes(5) + self.stream[13:]

    def test_boundary_not_seen_by_next_record(self):
        errors = []

        def handler(context, data):
            errors.append(context.last_error)
            return default_handler(context, data)

        sink = FramedBytesIO()
        sink.boundary = 5
        with BareStreamWriter(sink, handler=handler) as fh:
            fh.write(self.stream[:8])
            assert fh.seek(5) == 5
            assert isinstance(fh.last_error, RecordBoundaryReached)
            fh.write(self.stream[13:])
            assert fh.last_error is None
            result = sink.getvalue()
        assert result == self.stream[:8] + bytes(5) + self.stream[13:]
        assert errors == [None, None, None]

    def test_seek_zero_writes_header(self):
        sink = FramedBytesIO()
        with BareStreamWriter(sink) as fh:
            fh.write(self.stream[:8])
            assert sink.getvalue() == b''
            assert fh.seek(0) == 0
            assert sink.getvalue() == self.stream[:8]
            assert fh.state is PipelineState.IN_PAYLOAD
            assert fh.bytes_left == 5
            fh.write(self.stream[8:])
            result = sink.getvalue()
        assert result == self.stream


class TestFileOpener:
    def setup_class(cls):
        cls.classes = {'rb': BareFileReader,
                       'wb': BareFileWriter,
                       'rs': BareStreamReader,
                       'ws': BareStreamWriter}
        cls.file_opener = FileOpener('Bare', cls.classes)
        cls.open = staticmethod(FileOpener.create(globals(), doc='extra'))

    def test_create_opener(self):
        assert self.open.__wrapped__.__func__ is FileOpener.__call__
        assert 'Open a backup stream file' in self.open.__doc__
        assert self.open.__doc__.endswith('extra')
        assert self.open.__module__ == __name__

    def test_create_opener_wrong_ns(self):
        with pytest.raises(ValueError, match='does not contain'):
            FileOpener.create({}, doc='extra')

    @pytest.mark.parametrize('mode, expected', [
        ('rb', 'rb'), ('br', 'rb'), ('wb', 'wb'), ('r', 'rs'),
        ('w', 'ws'), ('sr', 'rs')])
    def test_normalize_mode(self, mode, expected):
        assert self.file_opener.normalize_mode(mode) == expected

    def test_invalid_mode(self):
        with pytest.raises(ValueError, match='invalid mode'):
            self.file_opener.normalize_mode('a')

    def test_open_filehandle(self):
        stream = bare_record(1, b'abc')
        fh = io.BytesIO(stream)
        with self.open(fh, 'rs') as sh:
            assert isinstance(sh, BareStreamReader)
            assert sh.fh_raw is fh
            assert sh.read() == stream
        with self.open(io.BytesIO(), 'rb') as fb:
            assert isinstance(fb, BareFileReader)

    def test_open_file(self, tmpdir):
        name = str(tmpdir.join('test.bak'))
        stream = bare_record(1, b'abc')
        with self.open(name, 'ws') as fw:
            fw.write(stream)
            assert fw.name == name
        with self.open(name, 'rb') as fr:
            assert fr.read() == stream
            with fr.temporary_offset(4):
                assert fr.read(4) == b'\x03\x00\x00\x00'
            assert fr.tell() == len(stream)
        with pytest.raises(FileExistsError):
            self.open(name, 'wb')
        with self.open(name, 'wb', overwrite=True) as fw:
            fw.write(b'')
        with self.open(name, 'r') as fr:
            assert fr.read() == b''
        with pytest.raises(ValueError, match='parrot'):
            self.open(name, 'ws', overwrite=True, parrot='dead')
