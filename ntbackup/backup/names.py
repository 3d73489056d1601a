# Licensed under the GPLv3 - see LICENSE
"""Stream names of alternate data streams.

On the wire, the name of an alternate data stream is stored in UTF-16-LE,
wrapped as ``:<name>:$DATA``, without a terminating NUL.  Higher layers
only see the bare name.
"""

__all__ = ['NAME_ENCODING', 'wrap_stream_name', 'unwrap_stream_name',
           'encode_stream_name', 'decode_stream_name',
           'parse_stream_data_name']

NAME_ENCODING = 'utf-16-le'
"""Fixed-width character encoding of stream names on the wire."""

_PREFIX = ':'
_DATA_SUFFIX = ':$DATA'


def wrap_stream_name(name):
    """Wrap a bare stream name as ``:<name>:$DATA``."""
    return _PREFIX + name + _DATA_SUFFIX


def unwrap_stream_name(wrapped):
    """Get the bare name from a ``:<name>:$DATA`` string.

    Returns an empty string if ``wrapped`` does not have that form, i.e.,
    if it is not the name of a data stream.
    """
    if not wrapped.startswith(_PREFIX) or not wrapped.endswith(_DATA_SUFFIX):
        return ''
    return wrapped[1:len(wrapped)-len(_DATA_SUFFIX)]


def encode_stream_name(name):
    """Wrap a bare stream name and encode it as stored on the wire.

    Raises
    ------
    ValueError
        If the name contains a NUL character.
    """
    if '\x00' in name:
        raise ValueError("stream name {0!r} contains a NUL character."
                         .format(name))
    return wrap_stream_name(name).encode(NAME_ENCODING, 'surrogatepass')


def decode_stream_name(raw):
    """Decode a stream name as stored on the wire and unwrap it.

    Decoding stops at a NUL character, if present.
    """
    wrapped = bytes(raw).decode(NAME_ENCODING, 'surrogatepass')
    return unwrap_stream_name(wrapped.split('\x00', 1)[0])


def parse_stream_data_name(stream_name):
    """Parse a ``:<name>:<type>`` stream name as given by stream enumeration.

    Only data streams are of interest; for other types (e.g.,
    ``$INDEX_ALLOCATION`` or ``$BITMAP``), and for the unnamed data
    stream ``::$DATA``, an empty string is returned.
    """
    fields = stream_name.split(':')
    if len(fields) != 3 or fields[0] or fields[2] != '$DATA':
        return ''
    return fields[1]
