"""
Communication package: motor bus packet codec and transport link.
"""

from .link import Link, LinkKind
from . import packet_codec

__all__ = ['Link', 'LinkKind', 'packet_codec']
