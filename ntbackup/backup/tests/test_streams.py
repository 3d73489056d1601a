# Licensed under the GPLv3 - see LICENSE
import io
from types import MappingProxyType

import pytest

from ...base.header import IncompleteHeaderError
from ..header import StreamType
from ..base import BackupFileWriter
from ..raw import RawBackupReader
from ..streams import AlternateStreams


class TestAlternateStreams:
    def setup_class(cls):
        fh = io.BytesIO()
        writer = BackupFileWriter(fh)
        writer.write_record(b'primary', stream_type=StreamType.DATA)
        writer.write_record(b'0123456789', name='ads1',
                            stream_type=StreamType.ALTERNATE_DATA)
        writer.write_record(b'', name='empty',
                            stream_type=StreamType.ALTERNATE_DATA)
        writer.write_record(b'abc', stream_type=StreamType.SPARSE_BLOCK,
                            sparse_offset=10)
        cls.stream = fh.getvalue()

    def setup_method(self):
        self.streams = AlternateStreams.fromfile(io.BytesIO(self.stream),
                                                 path='file.txt')

    def test_fromfile(self):
        assert self.streams == {'ads1': 10, 'empty': 0}
        assert len(self.streams) == 2
        assert 'ads1' in self.streams
        assert self.streams['ads1'] == 10
        assert list(self.streams) == ['ads1', 'empty']
        assert self.streams.path == 'file.txt'
        assert "'ads1': 10" in repr(self.streams)

    def test_fromfile_raw_reader(self):
        with RawBackupReader(io.BytesIO(self.stream), path='file.txt') as fh:
            streams = AlternateStreams.fromfile(fh)
        assert streams == {'ads1': 10, 'empty': 0}
        assert streams.path == 'file.txt'

    def test_fromfile_truncated(self):
        with pytest.raises(IncompleteHeaderError):
            AlternateStreams.fromfile(io.BytesIO(self.stream[:-10]))

    def test_fromnames(self):
        streams = AlternateStreams.fromnames(
            [('::$DATA', 100), (':ads1:$DATA', 10),
             (':$I30:$INDEX_ALLOCATION', 4096), (':two:$DATA', 3)])
        assert dict(streams) == {'ads1': 10, 'two': 3}

    def test_snapshot(self):
        snapshot = self.streams.snapshot()
        assert isinstance(snapshot, MappingProxyType)
        assert snapshot == {'ads1': 10, 'empty': 0}
        with pytest.raises(TypeError):
            snapshot['new'] = 1
        self.streams.rename('ads1', 'renamed')
        assert snapshot == {'ads1': 10, 'empty': 0}
        assert self.streams.snapshot() == {'renamed': 10, 'empty': 0}

    def test_add(self):
        self.streams.add('new', 5)
        assert self.streams['new'] == 5
        with pytest.raises(ValueError):
            self.streams.add('', 5)
        with pytest.raises(ValueError):
            self.streams.add('bad', -1)

    def test_rename(self):
        self.streams.rename('ads1', 'other')
        assert dict(self.streams) == {'other': 10, 'empty': 0}
        with pytest.raises(KeyError, match='does not exist'):
            self.streams.rename('ads1', 'other')
        with pytest.raises(FileExistsError):
            self.streams.rename('other', 'empty')
        self.streams.rename('other', 'empty', overwrite=True)
        assert dict(self.streams) == {'empty': 10}
        with pytest.raises(ValueError):
            self.streams.rename('empty', '')

    def test_remove(self):
        self.streams.remove('ads1')
        assert dict(self.streams) == {'empty': 0}
        with pytest.raises(KeyError, match='does not exist'):
            self.streams.remove('ads1')
        self.streams.clear()
        assert len(self.streams) == 0
