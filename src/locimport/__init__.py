"""locimport: bulk-import location hierarchies from CSV into a Care facility.

Parses repeated (name, type, description) column groups into a location tree
and creates it level by level through the backend's batch-request endpoint.
"""

__version__ = "0.3.0"
