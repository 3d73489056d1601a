# Licensed under the GPLv3 - see LICENSE
"""Base implementations shared by the backup-stream readers and writers.

A backup stream is a linear sequence of records, each of which consists of
a framing header followed by payload bytes.  The `~ntbackup.base.header`
module provides the machinery to describe headers as fields packed in
little-endian 32-bit words.

The `~ntbackup.base.base` module defines the binary file wrapper and the
stream pipelines that walk records one header at a time, passing payload
(and the header bytes themselves, while a header is active) through a
user-supplied transform hook.

Finally, `~ntbackup.base.utils` contains small general helpers.
"""
