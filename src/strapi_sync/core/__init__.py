from .async_utils import run_sync, run_sync_limited
from .client import StrapiClient, clear_token_cache

__all__ = ["StrapiClient", "clear_token_cache", "run_sync", "run_sync_limited"]
