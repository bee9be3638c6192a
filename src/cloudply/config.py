"""
Configuration & Constants
=========================
This module serves as the central registry for global constants of the codec.

Why is this file needed?
------------------------
1. Abstraction: It prevents magic numbers (precisions, format tags, default
   colour alpha) scattered throughout the reader and writer.
2. Portability: It resolves the binary format tag matching the byte order of
   the running interpreter, which is what the writer emits.

Exports:
    DEFAULT_ASCII_PRECISION (int): Significant digits for ASCII point export.
    MESH_ASCII_PRECISION (int): Significant digits for ASCII mesh export.
    HOST_FORMAT (str): Format tag for binary files written on this host.
"""
import sys
from importlib.metadata import version, PackageNotFoundError

try:
    PACKAGE_VERSION: str = version("cloudply")
except PackageNotFoundError:
    PACKAGE_VERSION = "0.0.0-dev"

# Global Constants
PLY_MAGIC: str = "ply"
END_HEADER: str = "end_header"
PLY_FORMAT_VERSION: str = "1.0"
GENERATOR_COMMENT: str = "generated by cloudply"

DEFAULT_ASCII_PRECISION: int = 8
MESH_ASCII_PRECISION: int = 5

# Alpha channel written into packed colours when the file declares none
DEFAULT_ALPHA: int = 255

HOST_FORMAT: str = "binary_little_endian" if sys.byteorder == "little" else "binary_big_endian"

# Log record layout used by setup_logging
LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT: str = "%H:%M:%S"
