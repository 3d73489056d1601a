# Licensed under the GPLv3 - see LICENSE
"""Raw sources and sinks of backup stream bytes.

The stream pipelines pull bytes from, and push bytes to, a raw source or
sink that understands the record framing well enough to tell whether a
relative seek stays inside the payload of the current record.  The classes
here provide that for backup streams stored in regular binary files.

They follow the record framing as bytes pass through, so that a relative
seek can report whether it stayed within the record, stopped at its end,
or could not start because the position is at a record header.  Each
owns its filehandle: ``close`` releases it exactly once, and if an
instance is garbage collected without being closed, the filehandle is
released anyway, with a `ResourceWarning`.
"""
import io
import logging
import warnings
import weakref

from ..base.base import SkipHeaderError, RecordBoundaryReached
from ..base.utils import raise_collected
from .header import BackupHeader


__all__ = ['BackupIOError', 'RawBackupBase', 'RawBackupReader',
           'RawBackupWriter']

logger = logging.getLogger(__name__)


class BackupIOError(OSError):
    """Failure of the filehandle underlying a raw backup stream.

    Parameters
    ----------
    op : str
        Operation that failed, such as 'read' or 'close'.
    filename : str or None
        Path of the file the backup stream belongs to.
    error : Exception
        The original error.
    """
    def __init__(self, op, filename, error):
        super().__init__(getattr(error, 'errno', None), str(error), filename)
        self.op = op

    def __str__(self):
        return "{0} {1!r}: {2}".format(self.op, self.filename, self.strerror)


def _release(fh, cls_name, path):
    warnings.warn("{0} for {1!r} was not closed; closing the underlying "
                  "file now.".format(cls_name, path), ResourceWarning)
    fh.close()


class RawBackupBase:
    """Base for raw backup stream sources and sinks.

    Parameters
    ----------
    fh : filehandle
        Binary file holding the backup stream.  It is owned by the
        instance from now on.
    path : str, optional
        Logical path used in error messages.  Default: the name of ``fh``,
        if it has one.
    """

    _header_class = BackupHeader

    chunk_size = 1 << 16
    """Maximum number of bytes transferred at a time when skipping."""

    def __init__(self, fh, *, path=None):
        self.fh = fh
        self.path = getattr(fh, 'name', None) if path is None else path
        self._record_left = 0
        self._header_buffer = bytearray()
        self._framing_error = None
        self._finalizer = weakref.finalize(self, _release, fh,
                                           self.__class__.__name__, self.path)

    @property
    def name(self):
        return self.path

    @property
    def closed(self):
        return not self._finalizer.alive

    def _check_closed(self):
        if self.closed:
            raise ValueError("I/O operation on closed stream.")

    @property
    def record_left(self):
        """Payload bytes left in the current record."""
        return self._record_left

    @property
    def at_header(self):
        """Whether the next bytes belong to a record header."""
        return self._record_left == 0

    def _error(self, op, exc):
        return BackupIOError(op, self.path, exc)

    def _track(self, data):
        """Follow the record framing over bytes that passed through."""
        view = memoryview(data).cast('B')
        while view and self._framing_error is None:
            if self._record_left:
                nbytes = min(len(view), self._record_left)
                self._record_left -= nbytes
                view = view[nbytes:]
                continue

            nbuffered = len(self._header_buffer)
            self._header_buffer += view
            try:
                header = self._header_class.frombytes(self._header_buffer)
            except EOFError:
                return
            except ValueError as exc:
                logger.debug("lost record framing: %s", exc)
                self._framing_error = exc
                return

            self._header_buffer.clear()
            self._record_left = header.size
            view = view[header.nbytes - nbuffered:]

    def readable(self):
        return False

    def writable(self):
        return False

    def seekable(self):
        return True

    def seek(self, offset, whence=1):
        """Move forward within the payload of the current record.

        Parameters
        ----------
        offset : int
            Number of bytes to move.  Must not be negative.
        whence : {1, 'current'}, optional
            Only relative seeks are possible.

        Returns
        -------
        moved : int
            Number of bytes moved, if the record has bytes left.

        Raises
        ------
        ~ntbackup.base.base.SkipHeaderError
            If positioned at (or inside) a record header.
        ~ntbackup.base.base.RecordBoundaryReached
            If the seek stopped at the end of the record.  Its ``moved``
            attribute holds the number of bytes moved.
        """
        self._check_closed()
        if whence not in (1, io.SEEK_CUR, 'current'):
            raise ValueError("only seeks relative to the current position "
                             "are supported.")
        if offset < 0:
            raise ValueError("can only seek forward.")
        if self._framing_error is not None:
            raise OSError("cannot seek since the record framing was lost."
                          ) from self._framing_error
        if self.at_header:
            raise SkipHeaderError("cannot seek over a record header.")

        try:
            moved = self._skip(min(offset, self._record_left))
        except OSError as exc:
            raise self._error('seek', exc) from exc

        self._record_left -= moved
        if self._record_left == 0:
            raise RecordBoundaryReached(
                moved, "seek stopped at the end of the record.")
        return moved

    def _release_context(self):
        self._record_left = 0
        self._header_buffer.clear()

    def close(self):
        """Release the record context and close the underlying file.

        Can be called repeatedly; only the first call has an effect.  All
        errors encountered are raised, combined in an `ExceptionGroup` if
        there are several.
        """
        if not self._finalizer.detach():
            return

        errors = []
        try:
            self._release_context()
        except Exception as exc:
            errors.append(self._error('release', exc))
        try:
            self.fh.close()
        except Exception as exc:
            errors.append(self._error('close', exc))
        raise_collected(errors, "errors while closing {0!r}"
                        .format(self.path))

    def detach(self):
        """Separate the underlying file from the raw stream and return it."""
        self._check_closed()
        self._finalizer.detach()
        return self.fh

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return ("<{0} path={1!r} record_left={2}>"
                .format(self.__class__.__name__, self.path,
                        self._record_left))


class RawBackupReader(RawBackupBase):
    """Source of backup stream bytes read from a binary file.

    Parameters
    ----------
    fh : filehandle
        Binary file holding the backup stream, opened for reading.
    path : str, optional
        Logical path used in error messages.
    """

    def readable(self):
        return True

    def read(self, size=-1):
        """Read up to ``size`` bytes; an empty result signals end of input."""
        self._check_closed()
        try:
            data = self.fh.read(size)
        except OSError as exc:
            raise self._error('read', exc) from exc
        self._track(data)
        return data

    def _skip(self, nbytes):
        skipped = 0
        while skipped < nbytes:
            data = self.fh.read(min(nbytes - skipped, self.chunk_size))
            if not data:
                break
            skipped += len(data)
        return skipped


class RawBackupWriter(RawBackupBase):
    """Sink for backup stream bytes written to a binary file.

    A forward seek inside a record payload writes zero bytes, so that the
    output remains a well-framed backup stream.

    Parameters
    ----------
    fh : filehandle
        Binary file for the backup stream, opened for writing.
    path : str, optional
        Logical path used in error messages.
    """

    def writable(self):
        return True

    def write(self, data):
        """Write data, returning the number of bytes actually written."""
        self._check_closed()
        try:
            nbytes = self.fh.write(data)
        except OSError as exc:
            raise self._error('write', exc) from exc
        if not nbytes:
            return 0
        self._track(memoryview(data).cast('B')[:nbytes])
        return nbytes

    def flush(self):
        self._check_closed()
        try:
            self.fh.flush()
        except OSError as exc:
            raise self._error('flush', exc) from exc

    def _skip(self, nbytes):
        zeros = memoryview(bytes(min(nbytes, self.chunk_size)))
        skipped = 0
        while skipped < nbytes:
            written = self.fh.write(zeros[:nbytes - skipped])
            if not written:
                break
            skipped += written
        return skipped

    def _release_context(self):
        try:
            self.fh.flush()
        finally:
            super()._release_context()
