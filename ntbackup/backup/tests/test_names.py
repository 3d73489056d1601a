# Licensed under the GPLv3 - see LICENSE
import pytest

from ..names import (wrap_stream_name, unwrap_stream_name,
                     encode_stream_name, decode_stream_name,
                     parse_stream_data_name)


def test_wrap():
    assert wrap_stream_name('ads1') == ':ads1:$DATA'
    assert unwrap_stream_name(':ads1:$DATA') == 'ads1'
    assert unwrap_stream_name(wrap_stream_name('with:colon')) == 'with:colon'


@pytest.mark.parametrize('wrapped', [
    '', 'ads1', ':ads1', 'ads1:$DATA', ':ads1:$INDEX_ALLOCATION',
    ':ads1:$data'])
def test_unwrap_not_data_stream(wrapped):
    assert unwrap_stream_name(wrapped) == ''


def test_encode_decode():
    raw = encode_stream_name('ads1')
    assert raw == ':ads1:$DATA'.encode('utf-16-le')
    assert len(raw) == 22
    assert decode_stream_name(raw) == 'ads1'
    # Decoding stops at a terminating NUL.
    assert decode_stream_name(raw + b'\x00\x00garbage!') == 'ads1'
    assert decode_stream_name(memoryview(raw)) == 'ads1'
    # Characters outside the basic plane use surrogate pairs.
    raw = encode_stream_name('\U0001f600')
    assert len(raw) == 2 * len(':x:$DATA') + 2
    assert decode_stream_name(raw) == '\U0001f600'


def test_encode_nul():
    with pytest.raises(ValueError, match='NUL'):
        encode_stream_name('a\x00b')


@pytest.mark.parametrize('stream_name, expected', [
    (':ads1:$DATA', 'ads1'),
    ('::$DATA', ''),
    (':ads1:$INDEX_ALLOCATION', ''),
    (':$I30:$BITMAP', ''),
    ('ads1:$DATA', ''),
    (':a:b:$DATA', '')])
def test_parse_stream_data_name(stream_name, expected):
    assert parse_stream_data_name(stream_name) == expected
