# Licensed under the GPLv3 - see LICENSE
"""
Base definitions for framing headers made of little-endian 32-bit words.

A header class holds the words of a fixed-size base header and gives
access to the fields encoded in them via a dict-like interface.  Field
layouts are described with a `HeaderParser`, which turns each description
into functions that extract or set the corresponding bits.  Type-specific
data following the base header (names, offsets) are left to subclasses.
"""
import struct
import warnings
from copy import copy

import numpy as np

from .utils import fixedvalue


__all__ = ['IncompleteHeaderError',
           'make_parser', 'make_setter', 'get_default',
           'ParserDict', 'HeaderParser', 'WordHeaderBase']


class IncompleteHeaderError(EOFError):
    """Input ended part-way through a header."""
    pass


def make_parser(word_index, bit_index, bit_length, default=None):
    """Construct a function that converts specific bits from a header.

    The function acts on a tuple/list of 32-bit words, extracting given bits
    from a specific word and converting them to bool (for a single bit) or
    integer.  As a special case, ``bit_length=64`` combines two consecutive
    words into a single little-endian 64-bit integer.

    Parameters
    ----------
    word_index : int
        Index into the tuple of words passed to the function.
    bit_index : int
        Index to the starting bit of the part to be extracted.
    bit_length : int
        Number of bits to be extracted.

    Returns
    -------
    parser : function
        To be used as ``parser(words)``.
    """
    if bit_length == 1:
        def parser(words):
            return (words[word_index] & (1 << bit_index)) != 0

    elif bit_length == 32:
        assert bit_index == 0

        def parser(words):
            return words[word_index]

    elif bit_length == 64:
        assert bit_index == 0

        def parser(words):
            return words[word_index] + (words[word_index + 1] << 32)

    else:
        bit_mask = (1 << bit_length) - 1
        if bit_index == 0:
            def parser(words):
                return words[word_index] & bit_mask

        else:
            def parser(words):
                return (words[word_index] >> bit_index) & bit_mask

    return parser


def make_setter(word_index, bit_index, bit_length, default=None):
    """Construct a function that uses a value to set specific bits in a header.

    Parameters are as for `make_parser`, with ``default`` the value to use
    if the setter is called with `None`.

    Returns
    -------
    setter : function
        To be used as ``setter(words, value)``.
    """
    def setter(words, value):
        bit_mask = (1 << bit_length) - 1
        if value is None:
            if default is None:
                raise ValueError("no default value so cannot set to 'None'.")
            value = default
        elif value is True:
            value = bit_mask
        elif np.any(value & bit_mask != value):
            raise ValueError("{0} cannot be represented with {1} bits"
                             .format(value, bit_length))
        value = int(value)
        if bit_length == 64:
            words[word_index] = value & 0xffffffff
            words[word_index + 1] = value >> 32
        else:
            word = words[word_index]
            # Zero the part to be set, and add the value.
            bit_mask <<= bit_index
            word = ((word | bit_mask) ^ bit_mask) | (value << bit_index)
            words[word_index] = word
        return words

    return setter


def get_default(word_index, bit_index, bit_length, default=None):
    """Return the default value from a header field description."""
    return default


class ParserDict:
    """Lazily evaluated dictionary of parsers, setters, or defaults.

    Implemented as a non-data descriptor.  When first accessed on an
    instance, it creates a dict under its own name in the instance's
    ``__dict__``, so that further attribute access returns that dict.

    Parameters
    ----------
    function : callable
        Used to create a parser or setter, or get the default, from a
        field description.  Typically one of ``make_parser``,
        ``make_setter``, or ``get_default``.
    """

    def __init__(self, function):
        self.function = function

    def __set_name__(self, owner, name):
        self.name = name
        self.__doc__ = f"Lazily evaluated dict of {name}"

    def __get__(self, instance, cls=None):
        if instance is None:
            return self
        d = {key: self.function(*definition)
             for key, definition in instance.items()}
        setattr(instance, self.name, d)
        return d

    def __repr__(self):
        return f"{self.__class__.__name__}({self.function})"


class HeaderParser(dict):
    """Parser & setter for header fields.

    A dictionary of field names, with values that describe how they are
    encoded in the header words.  Each value is a tuple containing:

    word_index : int
        Index into the header words for this key.
    bit_index : int
        Index to the starting bit of the part used for this key.
    bit_length : int
        Number of bits.
    default : int or bool or None
        Possible default value to use in initialisation.

    The ``parsers``, ``setters``, and ``defaults`` attributes are computed
    on first access and cleared on any change to the dictionary.
    """
    parsers = ParserDict(make_parser)
    setters = ParserDict(make_setter)
    defaults = ParserDict(get_default)

    def copy(self):
        return self.__class__(self)

    def __or__(self, other):
        if not isinstance(other, type(self)):
            return NotImplemented
        return self.__class__(super().__or__(other))

    def _clear_caches(self):
        for key in ('parsers', 'setters', 'defaults'):
            self.__dict__.pop(key, None)

    def __setitem__(self, key, value):
        super().__setitem__(key, value)
        self._clear_caches()

    def update(self, *args, **kwargs):
        super().update(*args, **kwargs)
        self._clear_caches()

    def pop(self, *args):
        result = super().pop(*args)
        self._clear_caches()
        return result


class WordHeaderBase:
    """Base class for headers stored as a fixed number of 32-bit words.

    Subclasses should define:

      _struct : `~struct.Struct` instance that can pack/unpack header words.

      _header_parser : `HeaderParser` instance for the fields in the words.

      _properties : tuple of properties accessible/usable in initialisation.

    Parameters
    ----------
    words : tuple or list of int, or None
        Header words.  If given as a tuple, the header is immutable.  If
        `None`, set to a list of zeros for later initialisation (and skip
        any verification).
    verify : bool, optional
        Whether to do basic verification of integrity.
    """

    _struct = struct.Struct('')
    _header_parser = HeaderParser()
    _properties = ()

    def __init__(self, words, verify=True):
        if words is None:
            words = [0] * (self._struct.size // 4)
            verify = False
        self.words = words
        if verify:
            self.verify()

    def verify(self):
        """Verify that the number of words is consistent with the struct."""
        assert len(self.words) == (self._struct.size // 4)

    def copy(self, **kwargs):
        """Create a mutable and independent copy of the header."""
        kwargs.setdefault('verify', False)
        new = self.__class__(copy(self.words), **kwargs)
        new.mutable = True
        return new

    def __copy__(self):
        return self.copy()

    @property
    def mutable(self):
        """Whether the header can be modified."""
        return not isinstance(self.words, tuple)

    @mutable.setter
    def mutable(self, mutable):
        if isinstance(self.words, tuple):
            if mutable:
                self.words = list(self.words)
        elif isinstance(self.words, list):
            if not mutable:
                self.words = tuple(self.words)
        else:
            raise TypeError("do not know how to set mutability of '.words' "
                            "of class {0}".format(type(self.words)))

    @classmethod
    def fromvalues(cls, **kwargs):
        """Initialise a header from parsed values.

        Keys of the header can be given as well as the names of properties
        listed in ``_properties``; fields not given are set to their
        defaults.
        """
        self = cls(None)
        for key in set(self.keys()).difference(kwargs.keys()):
            default = self._header_parser.defaults[key]
            if default is not None:
                kwargs[key] = default

        self.update(**kwargs)
        return self

    @classmethod
    def fromkeys(cls, **kwargs):
        """Initialise a header from values for all keys, and nothing else.

        Raises
        ------
        KeyError : if not all keys are present in ``kwargs``, or any extra.
        """
        self = cls(None)
        not_in_kwargs = set(self.keys()).difference(kwargs)
        not_in_self = set(kwargs).difference(self.keys())
        if not_in_kwargs or not_in_self:
            msg_parts = []
            for item, msg in ((not_in_kwargs, "is missing keywords ({0})"),
                              (not_in_self, "contains extra keywords ({0})")):
                if item:
                    msg_parts.append(msg.format(item))

            raise KeyError("input list " + " and ".join(msg_parts))

        self.update(**kwargs)
        return self

    def update(self, *, verify=True, **kwargs):
        """Update the header by setting keywords or properties.

        Keywords matching header keys are applied first, and any remaining
        ones are used to set properties, in the order given by
        ``_properties``.
        """
        for key in [key for key in kwargs if key in self.keys()]:
            self[key] = kwargs.pop(key)

        if kwargs:
            for key in self._properties:
                if key in kwargs:
                    setattr(self, key, kwargs.pop(key))

            if kwargs:
                warnings.warn("some keywords unused in header update: {0}"
                              .format(kwargs))

        if verify:
            self.verify()

    def __getitem__(self, item):
        try:
            return self._header_parser.parsers[item](self.words)
        except KeyError:
            raise KeyError("{0} header does not contain {1}"
                           .format(self.__class__.__name__, item)) from None

    def __setitem__(self, item, value):
        try:
            self._header_parser.setters[item](self.words, value)
        except KeyError:
            raise KeyError("{0} header does not contain {1}"
                           .format(self.__class__.__name__, item)) from None
        except (TypeError, ValueError):
            if not self.mutable:
                raise TypeError("header is immutable. Set '.mutable` attribute"
                                " or make a copy.")
            else:
                raise

    def keys(self):
        """All keys defined for this header."""
        return self._header_parser.keys()

    def __contains__(self, key):
        return key in self.keys()

    def __eq__(self, other):
        return (type(self) is type(other)
                and np.array_equal(self.words, other.words))

    @fixedvalue
    def base_nbytes(cls):
        """Size of the fixed part of the header in bytes."""
        return cls._struct.size

    @classmethod
    def fromfile(cls, fh, *args, **kwargs):
        """Read the fixed header words from a file.

        The header constructed will be immutable.

        Raises
        ------
        EOFError
            If the file is at its end.
        IncompleteHeaderError
            If the file ends part-way through the header.
        """
        s = fh.read(cls._struct.size)
        if len(s) != cls._struct.size:
            if not s:
                raise EOFError("no header bytes left.")
            raise IncompleteHeaderError("read {0} of {1} header bytes."
                                        .format(len(s), cls._struct.size))
        return cls(cls._struct.unpack(s), *args, **kwargs)

    def tobytes(self):
        """Encode the header words."""
        return self._struct.pack(*self.words)

    def tofile(self, fh):
        """Write the header to a filehandle."""
        return fh.write(self.tobytes())

    def _repr_value(self, key, value):
        return str(value)

    def __repr__(self):
        name = self.__class__.__name__
        outs = [f"{k}: {self._repr_value(k, self[k])}" for k in self.keys()]
        return "<{} {}>".format(name, (",\n  " + " "*len(name)).join(outs))
