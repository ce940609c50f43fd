"""
Persistence for the deployment engine.

The in-memory store is the default; set ``STORE_BACKEND=supabase`` to keep
records, backups and rollback results in Supabase.
"""

from typing import Optional

from patchdeploy.core.config import settings
from patchdeploy.db.store import DeploymentStore, InMemoryDeploymentStore


def create_store(backend: Optional[str] = None) -> DeploymentStore:
    """Create the store selected by ``backend`` (default from settings)."""
    backend = backend or settings.STORE_BACKEND
    if backend == "supabase":
        from patchdeploy.db.repositories import SupabaseDeploymentStore
        return SupabaseDeploymentStore()
    if backend == "memory":
        return InMemoryDeploymentStore()
    raise ValueError(f"Unsupported store backend: {backend}")
