"""Transport and async helpers shared by the connectors and the orchestrator."""

from .async_utils import gather_limited, run_sync
from .http import RestClient

__all__ = ["RestClient", "gather_limited", "run_sync"]
