# Licensed under the GPLv3 - see LICENSE
from astropy.utils import lazyproperty

from ..base.base import (
    FileBase,
    StreamReaderBase, StreamWriterBase,
    FileOpener)
from ..base.header import IncompleteHeaderError
from .header import BackupHeader
from .raw import RawBackupReader, RawBackupWriter


__all__ = ['BackupFileReader', 'BackupFileWriter',
           'BackupStreamReader', 'BackupStreamWriter', 'open']


class BackupFileReader(FileBase):
    """Simple reader for files holding a backup stream.

    Wraps a binary filehandle, providing methods to help interpret the
    records, such as `read_header` and `read_record`.  Iterating over the
    reader gives ``(header, payload)`` pairs for all remaining records.

    Parameters
    ----------
    fh_raw : filehandle
        Filehandle of the raw binary backup file.
    """

    def read_header(self, verify=True):
        """Read a single record header from the file.

        Parameters
        ----------
        verify : bool, optional
            Whether to do basic verification of integrity.  Default: `True`.

        Returns
        -------
        header : `~ntbackup.backup.BackupHeader`
        """
        return BackupHeader.fromfile(self.fh_raw, verify=verify)

    def _read_payload(self, header):
        payload = self.fh_raw.read(header.size)
        if len(payload) < header.size:
            raise EOFError("record payload ended after {0} of {1} bytes."
                           .format(len(payload), header.size))
        return payload

    def read_record(self, verify=True):
        """Read a single record (header plus payload).

        Returns
        -------
        header : `~ntbackup.backup.BackupHeader`
        payload : bytes
        """
        header = self.read_header(verify=verify)
        return header, self._read_payload(header)

    def skip_record(self, verify=True):
        """Read the next header and move past the payload of its record.

        Returns
        -------
        header : `~ntbackup.backup.BackupHeader`
        """
        header = self.read_header(verify=verify)
        self.fh_raw.seek(header.size, 1)
        return header

    def __iter__(self):
        while True:
            try:
                header = self.read_header()
            except IncompleteHeaderError:
                raise
            except EOFError:
                return

            yield header, self._read_payload(header)

    @lazyproperty
    def header0(self):
        """First record header in the file."""
        with self.temporary_offset(0):
            return self.read_header()


class BackupFileWriter(FileBase):
    """Simple writer for files holding a backup stream.

    Adds `write_header` and `write_record` methods to the basic binary
    file wrapper.
    """

    def write_header(self, header):
        """Write a single record header, including any name or offset."""
        return header.tofile(self.fh_raw)

    def write_record(self, payload=b'', header=None, **kwargs):
        """Write a single record (header plus payload).

        Parameters
        ----------
        payload : bytes-like
            Data of the record.
        header : `~ntbackup.backup.BackupHeader`, optional
            Can instead give keyword arguments to construct a header, in
            which case the size is taken from the payload.
        **kwargs
            If ``header`` is not given, these are used to initialize one.

        Returns
        -------
        header : `~ntbackup.backup.BackupHeader`
            The header written.
        """
        payload = memoryview(payload).cast('B')
        if header is None:
            kwargs.setdefault('size', len(payload))
            header = BackupHeader.fromvalues(**kwargs)
        if header.size != len(payload):
            raise ValueError("payload has {0} bytes while the header "
                             "declares {1}.".format(len(payload), header.size))
        self.write_header(header)
        self.fh_raw.write(payload)
        return header


class BackupStreamReader(StreamReaderBase):
    """Reader of backup streams, passing each record through a hook.

    Parameters
    ----------
    fh_raw : filehandle
        Source of the raw backup stream.  It should follow the record
        framing for seeks, as `~ntbackup.backup.raw.RawBackupReader` does.
    handler : callable, optional
        Called as ``handler(context, data)`` for every chunk of payload read,
        with ``context`` a `~ntbackup.base.base.BackupContext`, and returning
        the bytes to pass on.  While ``context.header.active`` is `True`,
        the header bytes should be included.  Default:
        `~ntbackup.base.base.default_handler`, which reproduces the stream.

    Examples
    --------
    To drop all alternate data streams from a backup stream::

        >>> from ntbackup import backup
        >>> ALTERNATE_DATA = backup.StreamType.ALTERNATE_DATA
        >>> def drop_alternate(context, data):
        ...     if context.last_error is not None:
        ...         raise context.last_error
        ...     if context.header.stream_type == ALTERNATE_DATA:
        ...         return b''
        ...     if context.header.active:
        ...         return context.header.tobytes() + data
        ...     return data
        >>> fh = backup.open('file.bak', 'rs', handler=drop_alternate)  # doctest: +SKIP
    """
    _header_class = BackupHeader
    _raw_class = RawBackupReader


class BackupStreamWriter(StreamWriterBase):
    """Writer of backup streams, passing each record through a hook.

    Parameters
    ----------
    fh_raw : filehandle
        Sink for the raw backup stream.  It should follow the record
        framing for seeks, as `~ntbackup.backup.raw.RawBackupWriter` does.
    handler : callable, optional
        Called as ``handler(context, data)`` for every chunk of payload
        written, with ``context`` a `~ntbackup.base.base.BackupContext`,
        and returning the bytes to pass on to the sink.  While
        ``context.header.active`` is `True`, the header bytes should be
        included.  Default: `~ntbackup.base.base.default_handler`.
    write_callback : callable, optional
        Called with the error from every write to the sink (`None` for
        success).  Returning an exception aborts the write.  Default:
        `~ntbackup.base.base.default_write_callback`.
    max_write_retries : int, optional
        Number of consecutive writes to the sink that may make no progress.
        Default: 16.
    """
    _header_class = BackupHeader
    _raw_class = RawBackupWriter


open = FileOpener.create(globals(), doc="""
--- For reading a stream : (see :class:`~ntbackup.backup.base.BackupStreamReader`)

handler : callable, optional
    Transform hook called with the record context and every chunk of
    payload.  Default: pass on all bytes unchanged.

--- For writing a stream : (see :class:`~ntbackup.backup.base.BackupStreamWriter`)

handler : callable, optional
    Transform hook called with the record context and every chunk of
    payload.  Default: pass on all bytes unchanged.
write_callback : callable, optional
    Called with the error from each write to the file (or `None`).  If it
    returns an exception, that is raised.  Default: raise any error.
max_write_retries : int, optional
    Number of consecutive writes that may make no progress before giving
    up.  Default: 16.

Notes
-----
Files opened for writing are created; an existing file is only replaced
if ``overwrite=True`` is passed.
""")
