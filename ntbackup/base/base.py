# Licensed under the GPLv3 - see LICENSE
"""Common classes for accessing backup streams as binary files and streams.

For access as binary files, the `~ntbackup.base.base.FileBase` class wraps
a filehandle so that methods such as ``read_header`` and ``write_record``
can be added.

For access as streams, `~ntbackup.base.base.StreamReaderBase` and
`~ntbackup.base.base.StreamWriterBase` walk a backup stream one record
header at a time, while exposing it as a sequence of bytes through the
``read``, ``write``, and ``seek`` methods.  Every chunk of payload passes
through a transform hook (``handler``), which is called with a
`~ntbackup.base.base.BackupContext` describing the current record.  While
the record header is active (i.e., before its first payload has been
passed on), the hook is responsible for emitting the header bytes as
well; the default hook, `~ntbackup.base.base.default_handler`, simply
prepends them, so that the stream is reproduced byte for byte.

The `~ntbackup.base.base.FileOpener` class helps create the ``open``
function for a given format.
"""
import io
import enum
import functools
import logging
import operator
import textwrap
import warnings
from collections import namedtuple
from contextlib import contextmanager

from .header import IncompleteHeaderError


__all__ = ['SkipHeaderError', 'RecordBoundaryReached', 'WriteStallError',
           'PipelineState', 'BackupContext',
           'default_handler', 'default_write_callback',
           'FileBase', 'StreamBase', 'StreamReaderBase', 'StreamWriterBase',
           'FileOpener']

logger = logging.getLogger(__name__)


class SkipHeaderError(OSError):
    """Cannot seek while positioned at a record header.

    Header bytes can only be read and decoded, not skipped over.
    """
    pass


class RecordBoundaryReached(EOFError):
    """A relative seek stopped at the end of the current record.

    Not a true error: raised by sources and sinks to signal that the
    payload of the current record was exhausted by the seek, so that the
    next bytes form a record header.

    Parameters
    ----------
    moved : int
        Number of bytes actually moved.
    """
    def __init__(self, moved, *args):
        super().__init__(*args)
        self.moved = moved


class WriteStallError(OSError):
    """The sink repeatedly accepted no bytes at all."""
    pass


class PipelineState(enum.Enum):
    """Position of a pipeline relative to the record framing."""
    AWAITING_HEADER = 'awaiting header'
    IN_PAYLOAD = 'in payload'


BackupContext = namedtuple('BackupContext',
                           ['header', 'bytes_left', 'last_error'])
BackupContext.__doc__ = """\
Context passed to a transform hook on every call.

Parameters
----------
header : header instance
    Header of the current record.  Its ``active`` attribute is `True` if
    the header bytes have not yet been passed on.  Should not be modified.
bytes_left : int
    Payload bytes of the record not yet passed on, including those in the
    chunk given to the hook.
last_error : Exception or None
    Last error from the underlying source or sink.  For a reader, an
    `EOFError` indicates that the input ended inside the record.
"""


def default_handler(context, data):
    """Pass on data as is, preceded by the header bytes if it is active.

    Any error from the underlying source is raised.
    """
    if context.last_error is not None:
        raise context.last_error
    if context.header.active:
        return context.header.tobytes() + bytes(data)
    return data


def default_write_callback(error):
    """Abort writing on any error from the underlying sink."""
    return error


class FileBase:
    """File wrapper, used to add record methods to a binary backup file.

    The underlying file is stored in ``fh_raw`` and all attributes that do not
    exist on the class itself are looked up on it.

    Parameters
    ----------
    fh_raw : filehandle
        Filehandle of the raw binary backup file.
    """
    fh_raw = None

    def __init__(self, fh_raw):
        self.fh_raw = fh_raw

    def __getattr__(self, attr):
        """Try to get things on the current open file if it is not on self."""
        if not attr.startswith('_'):
            try:
                return getattr(self.fh_raw, attr)
            except AttributeError:
                pass
        #  __getattribute__ to raise appropriate error.
        return self.__getattribute__(attr)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.fh_raw.close()

    @contextmanager
    def temporary_offset(self, offset=None, whence=0):
        """Context manager for temporarily seeking to another file position.

        To be used as part of a ``with`` statement::

            with fh_raw.temporary_offset() [as fh_raw]:
                with-block

        On exiting the ``with-block``, the file pointer is moved back to its
        original position.  Parameters are as for :meth:`io.IOBase.seek`.
        """
        oldpos = self.tell()
        try:
            if offset is not None:
                self.seek(offset, whence)
            yield self
        finally:
            self.seek(oldpos)

    def __repr__(self):
        return "{0}(fh_raw={1})".format(self.__class__.__name__, self.fh_raw)


class StreamBase:
    """Backup stream wrapper, passing records through a transform hook.

    Common methods between stream readers and writers, mostly dealing with
    the record framing state and seeking.

    Parameters
    ----------
    fh_raw : filehandle
        Source or sink of raw backup stream bytes.  Relative seeks should
        return the number of bytes moved, raise
        `~ntbackup.base.base.RecordBoundaryReached` if the seek stopped
        at the end of a record, and
        `~ntbackup.base.base.SkipHeaderError` if positioned at a header.
    handler : callable, optional
        Transform hook, called as ``handler(context, data)`` for every
        chunk of payload, and returning the bytes to pass on.  Default:
        `~ntbackup.base.base.default_handler`.
    """

    _header_class = None
    """Class used to decode record headers.  To be set by subclasses."""

    def __init__(self, fh_raw, *, handler=None):
        self.fh_raw = fh_raw
        self.handler = default_handler if handler is None else handler
        self._state = PipelineState.AWAITING_HEADER
        self._header = None
        self._bytes_left = 0
        self._last_error = None
        self._closed = False
        self.offset = 0

    @property
    def header(self):
        """Header of the current record (`None` before the first)."""
        return self._header

    @property
    def state(self):
        """Whether awaiting a record header or inside a payload."""
        return self._state

    @property
    def bytes_left(self):
        """Payload bytes of the current record not yet passed on."""
        return self._bytes_left

    @property
    def last_error(self):
        """Last error from the underlying source or sink."""
        return self._last_error

    @property
    def context(self):
        """Context of the current record, as passed to the handler."""
        return BackupContext(self._header, self._bytes_left,
                             self._last_error)

    @property
    def closed(self):
        return self._closed

    def _check_closed(self):
        if self._closed:
            raise ValueError("I/O operation on closed stream.")

    def _transform(self, data):
        result = self.handler(self.context, data)
        if result is None:
            raise TypeError("handler returned None instead of bytes; "
                            "it should raise an exception on failure.")
        return result

    def tell(self):
        """Number of bytes passed through the pipeline, or skipped."""
        return self.offset

    def seekable(self):
        return True

    def seek(self, offset, whence=1):
        """Skip forward within the payload of the current record.

        Parameters
        ----------
        offset : int
            Number of bytes to skip.  Must not be negative.
        whence : {1, 'current'}, optional
            Only seeks relative to the current position are possible.

        Returns
        -------
        moved : int
            Number of bytes actually skipped.  If this reached the end of
            the record, the next read or write will be of a header.

        Raises
        ------
        ~ntbackup.base.base.SkipHeaderError
            If the pipeline is positioned at a record header.
        ValueError
            If the seek is not forward and relative.
        """
        self._check_closed()
        if whence not in (1, 'current'):
            raise ValueError("only seeks relative to the current position "
                             "are supported.")
        offset = operator.index(offset)
        if offset < 0:
            raise ValueError("can only seek forward.")
        if self._state is PipelineState.AWAITING_HEADER:
            raise SkipHeaderError("cannot seek while positioned at a "
                                  "record header.")

        try:
            moved = self.fh_raw.seek(offset, 1)
        except RecordBoundaryReached as exc:
            self._last_error = exc
            moved = exc.moved
            logger.debug("seek reached end of record after %d bytes", moved)
            self._bytes_left = 0
            self._state = PipelineState.AWAITING_HEADER
        except Exception as exc:
            self._last_error = exc
            raise
        else:
            self._last_error = None
            self._bytes_left -= moved

        self.offset += moved
        return moved

    def __getattr__(self, attr):
        """Try to get things on the current open file if it is not on self."""
        if attr in {'name', 'fileno', 'isatty'}:
            return getattr(self.fh_raw, attr)
        #  __getattribute__ to raise appropriate error.
        return self.__getattribute__(attr)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        """Close the stream and release the underlying source or sink.

        Can be called more than once; only the first call has an effect.
        """
        if self._closed:
            return
        self._closed = True
        self.fh_raw.close()

    def __repr__(self):
        return ("<{s.__class__.__name__} fh_raw={s.fh_raw} offset={s.offset}"
                "\n    state={s.state.value}, bytes_left={s.bytes_left}>"
                .format(s=self))


class StreamReaderBase(StreamBase):
    """Base for backup stream readers.

    Decodes record headers from the source one at a time, and passes the
    payload of each record through the transform hook.  With the default
    hook, the bytes read are identical to those of the source.

    Parameters
    ----------
    fh_raw : filehandle
        Source of the raw backup stream.
    handler : callable, optional
        Transform hook; see `~ntbackup.base.base.StreamBase`.

    Notes
    -----
    Output of the hook that does not fit in the number of bytes requested
    is kept and returned first on the next call to ``read``.

    While a header is active and the payload does not fit in the bytes
    requested, the number of payload bytes read is reduced by the header
    size, to leave room for the header bytes in the same call.  If that
    leaves no room for payload at all, the header bytes are returned
    directly, without calling the hook.
    """

    chunk_size = 1 << 16
    """Number of bytes requested at a time when reading everything."""

    def __init__(self, fh_raw, *, handler=None):
        super().__init__(fh_raw, handler=handler)
        self._leftover = b''

    def readable(self):
        return True

    def writable(self):
        return False

    def read(self, count=-1):
        """Read up to ``count`` bytes of the (transformed) backup stream.

        Parameters
        ----------
        count : int or None, optional
            Maximum number of bytes to read.  If `None` or negative
            (default), read until the end of the stream.

        Returns
        -------
        data : bytes
            Empty only at the end of the stream.

        Raises
        ------
        ~ntbackup.base.header.IncompleteHeaderError
            If the stream ends inside a record header.
        """
        self._check_closed()
        if count is None or count < 0:
            return self.readall()
        if count == 0:
            return b''

        if self._leftover:
            data = self._leftover[:count]
            self._leftover = self._leftover[count:]
            self.offset += len(data)
            return data

        while True:
            if self._state is PipelineState.AWAITING_HEADER:
                if not self._read_header():
                    return b''

            elif self._bytes_left == 0 and not self._header.active:
                self._state = PipelineState.AWAITING_HEADER

            else:
                data = self._read_payload(count)
                self._header.active = False
                # An empty chunk from a filtering handler is not the end.
                if data or self._last_error is not None:
                    self.offset += len(data)
                    return data

    def readall(self):
        """Read until the end of the stream."""
        parts = []
        while True:
            data = self.read(self.chunk_size)
            if not data:
                break
            parts.append(data)
        return b''.join(parts)

    def readinto(self, buffer):
        """Read bytes into a pre-allocated, writable bytes-like object."""
        view = memoryview(buffer).cast('B')
        data = self.read(len(view))
        view[:len(data)] = data
        return len(data)

    def _read_header(self):
        """Decode the next header; return `False` at the end of the stream."""
        try:
            header = self._header_class.fromfile(self.fh_raw)
        except IncompleteHeaderError:
            raise
        except EOFError:
            return False

        self._header = header
        self._bytes_left = header.size
        self._state = PipelineState.IN_PAYLOAD
        self._last_error = None
        return True

    def _read_payload(self, count):
        header = self._header
        read_size = min(count, self._bytes_left)
        if header.active and self._bytes_left > count:
            read_size -= header.nbytes

        if read_size > 0:
            try:
                data = self.fh_raw.read(read_size)
            except OSError as exc:
                data = b''
                self._last_error = exc
            else:
                self._last_error = None if data else EOFError(
                    "backup stream ended with {0} bytes left in record."
                    .format(self._bytes_left))
            try:
                out = self._transform(data)
            finally:
                self._bytes_left -= len(data)

        elif self._bytes_left == 0:
            # Empty record: only the header is left to pass on.
            self._last_error = None
            out = self._transform(b'')

        else:
            out = header.tobytes()

        out = bytes(out)
        if len(out) > count:
            self._leftover = out[count:]
            out = out[:count]
        return out

    def close(self):
        self._leftover = b''
        super().close()


class StreamWriterBase(StreamBase):
    """Base for backup stream writers.

    Accepts the bytes of a backup stream in arbitrarily sized pieces,
    assembles and decodes record headers, and writes the payload of each
    record to the sink after passing it through the transform hook.  With
    the default hook, the bytes written are identical to those given.

    Parameters
    ----------
    fh_raw : filehandle
        Sink for the raw backup stream.
    handler : callable, optional
        Transform hook; see `~ntbackup.base.base.StreamBase`.
    write_callback : callable, optional
        Called with the error raised by the sink (or `None`) after every
        write attempt.  If it returns an exception, that is raised and
        writing is aborted; if it returns `None`, writing continues with
        what is left.  Default: `~ntbackup.base.base.default_write_callback`,
        which aborts on any error.
    max_write_retries : int, optional
        Maximum number of consecutive write attempts that may make no
        progress before `~ntbackup.base.base.WriteStallError` is raised.
        Default: 16.
    """

    def __init__(self, fh_raw, *, handler=None, write_callback=None,
                 max_write_retries=16):
        super().__init__(fh_raw, handler=handler)
        self.write_callback = (default_write_callback if write_callback is None
                               else write_callback)
        self.max_write_retries = operator.index(max_write_retries)
        self._header_buffer = bytearray()

    def readable(self):
        return False

    def writable(self):
        return True

    def write(self, data):
        """Write part of a backup stream.

        The data do not have to be aligned with records: incomplete headers
        are kept until more data arrive.

        Parameters
        ----------
        data : bytes-like
            Next piece of the backup stream.

        Returns
        -------
        nbytes : int
            Always the full length of ``data``.
        """
        self._check_closed()
        data = memoryview(data).cast('B')
        total = len(data)
        pos = 0
        while True:
            if self._state is PipelineState.AWAITING_HEADER:
                if pos == total:
                    break
                used = self._assemble_header(data[pos:])
                if used is None:
                    # Wait for more bytes to complete the header.
                    pos = total
                    break
                pos += used

            elif self._bytes_left == 0 and not self._header.active:
                self._state = PipelineState.AWAITING_HEADER

            elif pos == total and self._bytes_left:
                break

            else:
                nbytes = min(total - pos, self._bytes_left)
                self._write_payload(data[pos:pos + nbytes])
                pos += nbytes
                self._header.active = False

        self.offset += total
        return total

    def _assemble_header(self, data):
        """Add data to the header buffer and try to decode a header.

        Returns the number of bytes of ``data`` used for the header, or
        `None` if more are needed.
        """
        nbuffered = len(self._header_buffer)
        self._header_buffer += data
        try:
            header = self._header_class.frombytes(self._header_buffer)
        except EOFError:
            return None
        except Exception:
            del self._header_buffer[nbuffered:]
            raise

        self._header_buffer.clear()
        self._header = header
        self._bytes_left = header.size
        self._state = PipelineState.IN_PAYLOAD
        self._last_error = None
        return header.nbytes - nbuffered

    def _write_payload(self, data):
        out = self._transform(data)
        self._fh_raw_write(out)
        self._bytes_left -= len(data)

    def _fh_raw_write(self, data):
        """Write all of data to the sink, retrying on short writes."""
        view = memoryview(data).cast('B')
        stalled = 0
        while view:
            try:
                nbytes = self.fh_raw.write(view)
            except OSError as exc:
                nbytes = 0
                self._last_error = exc
            else:
                self._last_error = None

            error = self.write_callback(self._last_error)
            if error is not None:
                raise error

            if nbytes:
                stalled = 0
                view = view[nbytes:]
            else:
                stalled += 1
                if stalled > self.max_write_retries:
                    raise WriteStallError(
                        "sink accepted no bytes in {0} attempts; {1} bytes "
                        "not written.".format(stalled, len(view)))

    def seek(self, offset, whence=1):
        # The sink can only skip payload once it has seen the header.
        self._check_closed()
        if (self._state is PipelineState.IN_PAYLOAD and self._header.active
                and whence in (1, 'current') and offset >= 0):
            self._write_payload(b'')
            self._header.active = False
        return super().seek(offset, whence)

    seek.__doc__ = StreamBase.seek.__doc__

    def flush(self):
        self._check_closed()
        flush = getattr(self.fh_raw, 'flush', None)
        if flush is not None:
            flush()

    def close(self):
        if self._closed:
            return
        try:
            if self._header_buffer or (
                    self._state is PipelineState.IN_PAYLOAD
                    and (self._bytes_left or self._header.active)):
                warnings.warn("closing with an incomplete record: {0} header "
                              "bytes buffered, {1} payload bytes missing."
                              .format(len(self._header_buffer),
                                      self._bytes_left))
        finally:
            self._header_buffer = bytearray()
            super().close()


class FileOpener:
    """File opener for a backup stream format.

    Each instance can be used as a function to open a backup stream.
    It is probably best used inside a wrapper, so that the documentation
    can reflect the docstring of ``__call__`` rather than of this class.

    Parameters
    ----------
    fmt : str
        Name of the format.
    classes : dict
        With the file/stream reader/writer classes keyed by the modes
        'rb', 'wb', 'rs', and 'ws'.  Stream classes with a ``_raw_class``
        attribute get filehandles wrapped in that class, unless they are
        instances of it already.
    """

    def __init__(self, fmt, classes):
        self.fmt = fmt
        self.classes = classes

    def normalize_mode(self, mode):
        if mode in self.classes:
            return mode
        if mode[::-1] in self.classes:
            return mode[::-1]
        if mode in {'r', 'w'}:
            return mode + 's'

        raise ValueError(f'invalid mode: {mode} '
                         f'({self.fmt} supports {set(self.classes)}).')

    @staticmethod
    def is_fh(name):
        """Whether name is a filehandle."""
        return hasattr(name, 'read') or hasattr(name, 'write')

    def get_fh(self, name, mode, overwrite=False):
        """Ensure name is a filehandle, opening it if necessary.

        Files opened for writing must not exist yet, unless ``overwrite``
        is set.
        """
        if self.is_fh(name):
            return name

        if mode[0] == 'r':
            open_mode = 'rb'
        else:
            open_mode = 'wb' if overwrite else 'xb'
        return io.open(name, open_mode)

    def __call__(self, name, mode='rs', *, overwrite=False, **kwargs):
        """
        Open a backup stream file for reading or writing.

        Opened as a binary file, one gets a wrapped filehandle that adds
        methods to read/write a record.  Opened as a stream, the handle is
        wrapped further, so that the backup stream is read or written as a
        sequence of bytes, passing through a transform hook.

        Parameters
        ----------
        name : str or filehandle
            File name or filehandle.
        mode : {'rb', 'wb', 'rs', or 'ws'}, optional
            Whether to open for reading or writing, and as a regular binary
            file or as a stream. Default: 'rs', for reading a stream.
        overwrite : bool, optional
            When writing to a named file, whether an existing file may be
            replaced.  Default: `False`.
        **kwargs
            Additional arguments when opening the file as a stream, such as
            ``handler``, ``write_callback``, and ``max_write_retries``.
        """
        mode = self.normalize_mode(mode)
        cls = self.classes[mode]
        fh = self.get_fh(name, mode, overwrite=overwrite)
        opened = fh is not name
        raw_class = getattr(cls, '_raw_class', None)
        if raw_class is not None and not isinstance(fh, raw_class):
            fh = raw_class(fh)
        try:
            return cls(fh, **kwargs)
        except Exception:
            if opened:
                fh.close()
            elif fh is not name:
                fh.detach()
            raise

    def wrapped(self, module=None, doc=None):
        """Wrap as a function named open, replacing docstring and module."""

        @functools.wraps(self.__call__)
        def open(*args, **kwargs):
            return self(*args, **kwargs)

        if doc:
            open.__doc__ = doc

        # This ensures the function becomes visible to sphinx.
        if module:
            open.__module__ = module

        return open

    @classmethod
    def create(cls, ns, doc=None):
        """Create a standard opener for the given namespace.

        This assumes that the namespace contains file and stream readers
        and writers with standard names, ``<fmt>FileReader``,
        ``<fmt>FileWriter``, ``<fmt>StreamReader``, and
        ``<fmt>StreamWriter``, where ``fmt`` is the name of the format
        (which is inferred by looking for a ``*StreamReader`` entry).

        Parameters
        ----------
        ns : dict
            Namespace to look in.  Generally, pass in ``globals()`` at the
            call site.
        doc : str, optional
            Extra documentation to add to that of the opener's ``__call__``
            method.
        """
        module = ns.get('__name__', None)
        for key in ns:
            if key.endswith('StreamReader'):
                fmt = key.replace('StreamReader', '')
                break
        else:  # noqa
            raise ValueError('namespace does not contain a StreamReader, '
                             'so fmt cannot be guessed.')

        classes = {mode: ns[fmt + cls_type] for (mode, cls_type) in {
            'rb': 'FileReader',
            'wb': 'FileWriter',
            'rs': 'StreamReader',
            'ws': 'StreamWriter'}.items()}
        opener = cls(fmt.lower(), classes)
        if doc is not None:
            doc = textwrap.dedent(opener.__call__.__doc__) + doc
        return opener.wrapped(module=module, doc=doc)
