# Licensed under the GPLv3 - see LICENSE
"""Backup stream (``WIN32_STREAM_ID``) reader/writer.

A backup stream holds all data of a file system object (primary data,
security descriptor, alternate data streams, sparse blocks, etc.) as a
sequence of records, each consisting of a header and payload.  For the
record layout, see `~ntbackup.backup.header`.
"""
from .base import open  # noqa
from .header import (StreamType, StreamAttributes, BackupHeader,  # noqa
                     BackupHeaderError, OddNameLengthError,
                     EmptyStreamNameError)
from .raw import RawBackupReader, RawBackupWriter, BackupIOError  # noqa
from .streams import AlternateStreams  # noqa
