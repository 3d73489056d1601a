# Licensed under the GPLv3 - see LICENSE
"""Streaming reader/writer of Windows backup streams."""
from importlib.metadata import version, PackageNotFoundError

from .backup import open  # noqa

try:
    __version__ = version(__name__)
except PackageNotFoundError:  # Can happen in source checkout.
    __version__ = ''

# Define minima for the documentation, but do not bother to explicitly check.
__minimum_python_version__ = '3.11'
__minimum_astropy_version__ = '5.1'
__minimum_numpy_version__ = '1.24'
