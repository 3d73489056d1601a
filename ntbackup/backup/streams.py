# Licensed under the GPLv3 - see LICENSE
"""Inventory of the alternate data streams of a file.

An `AlternateStreams` instance owns a mapping of stream name to size.  It
can be filled from the records of a backup stream or from the
``:name:$TYPE`` names produced by stream enumeration.  Only the owner
should modify it; other readers should use a `~AlternateStreams.snapshot`.
"""
import logging
from collections.abc import Mapping
from types import MappingProxyType

from ..base.base import RecordBoundaryReached
from ..base.header import IncompleteHeaderError
from .header import BackupHeader, StreamType
from .names import parse_stream_data_name


__all__ = ['AlternateStreams']

logger = logging.getLogger(__name__)


class AlternateStreams(Mapping):
    """Mapping of alternate data stream names to their sizes.

    Parameters
    ----------
    streams : mapping or iterable of (name, size), optional
        Initial content.
    path : str, optional
        Path of the file the streams belong to, for information only.
    """

    def __init__(self, streams=(), path=None):
        self.path = path
        self._streams = dict(streams)

    @classmethod
    def fromfile(cls, fh, path=None):
        """Collect alternate data streams from the records of a backup stream.

        Parameters
        ----------
        fh : filehandle
            Binary file positioned at a record header, or a
            `~ntbackup.backup.raw.RawBackupReader`.  Records are read until
            the end of the file.
        path : str, optional
            Path of the file the streams belong to.  Default: the name of
            ``fh``, if it has one.
        """
        if path is None:
            path = getattr(fh, 'name', None)
        self = cls(path=path)
        while True:
            try:
                header = BackupHeader.fromfile(fh)
            except IncompleteHeaderError:
                raise
            except EOFError:
                break
            if header.stream_type == StreamType.ALTERNATE_DATA:
                self._streams[header.name] = header.size
            if header.size:
                try:
                    fh.seek(header.size, 1)
                except RecordBoundaryReached:
                    pass

        logger.debug("found %d alternate data streams in %r",
                     len(self._streams), path)
        return self

    @classmethod
    def fromnames(cls, entries, path=None):
        """Collect alternate data streams from enumerated stream names.

        Parameters
        ----------
        entries : iterable of (str, int)
            Stream names of the form ``:name:$TYPE`` with their sizes.
            Streams that are not named data streams are skipped.
        path : str, optional
            Path of the file the streams belong to.
        """
        self = cls(path=path)
        for stream_name, size in entries:
            name = parse_stream_data_name(stream_name)
            if name:
                self._streams[name] = size
        return self

    def __getitem__(self, name):
        return self._streams[name]

    def __iter__(self):
        return iter(self._streams)

    def __len__(self):
        return len(self._streams)

    def snapshot(self):
        """Read-only view of a copy of the current streams."""
        return MappingProxyType(dict(self._streams))

    def add(self, name, size):
        """Register a stream, replacing any previous entry of that name."""
        if not name:
            raise ValueError("alternate data stream needs a name.")
        if size < 0:
            raise ValueError("size cannot be negative.")
        self._streams[name] = size

    def rename(self, old_name, new_name, overwrite=False):
        """Rename a stream.

        Raises
        ------
        KeyError
            If there is no stream called ``old_name``.
        FileExistsError
            If a stream called ``new_name`` exists and ``overwrite`` is not
            set.
        """
        if old_name not in self._streams:
            raise KeyError("stream {0!r} does not exist.".format(old_name))
        if not new_name:
            raise ValueError("alternate data stream needs a name.")
        if new_name in self._streams and not overwrite:
            raise FileExistsError("stream {0!r} already exists."
                                  .format(new_name))
        self._streams[new_name] = self._streams.pop(old_name)

    def remove(self, name):
        """Remove a stream.

        Raises
        ------
        KeyError
            If there is no stream called ``name``.
        """
        try:
            del self._streams[name]
        except KeyError:
            raise KeyError("stream {0!r} does not exist."
                           .format(name)) from None

    def clear(self):
        """Remove all streams."""
        self._streams.clear()

    def __repr__(self):
        return "{0}({1!r}, path={2!r})".format(
            self.__class__.__name__, self._streams, self.path)
