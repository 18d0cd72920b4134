from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

REQUIRED_ENV = ("SUPABASE_URL", "SUPABASE_KEY")


@lru_cache(maxsize=1)
def get_client() -> Any:
    """Shared Supabase client for every repository in the process."""
    missing = [name for name in REQUIRED_ENV if not os.getenv(name)]
    if missing:
        raise RuntimeError(f"Supabase storage needs {' and '.join(missing)} to be set")
    try:
        from supabase import create_client
    except ImportError as exc:
        raise RuntimeError("Install payoutledger[supabase] to use PAYOUTLEDGER_STORAGE_BACKEND=supabase") from exc
    return create_client(os.environ["SUPABASE_URL"], os.environ["SUPABASE_KEY"])
