"""
pgclusters - Manage PostgreSQL clusters side by side on one host
"""

__version__ = "0.1.0"

from .core import ClusterManager
from .errors import ClusterError

__all__ = ["ClusterManager", "ClusterError"]
