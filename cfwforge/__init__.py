"""cfwforge: selective, reproducible repackaging of firmware containers.

  - Opaque container transform behind a pluggable ``ContainerCodec``
  - Fingerprint-driven decision of which nested archives to rebuild
  - Format-preserving tar rebuild with deterministic gzip timestamps
  - Byte-preserving replacement of outer ZIP members
  - Minimal-diff manifest synchronisation with atomic write and rollback
"""

__version__ = "0.1.0"
__description__ = "Selective, reproducible repackaging of firmware containers"

from cfwforge.core.orchestrator import Orchestrator
from cfwforge.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
