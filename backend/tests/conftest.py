import asyncio
import json
from typing import Dict, List, Optional, Union

import pytest

from patchdeploy.core.errors import TransportError
from patchdeploy.db.store import InMemoryDeploymentStore
from patchdeploy.models.deployment import (
    Backup,
    ChangeKind,
    Connection,
    DeploymentStatus,
    FileChange,
    HealthSample,
    HealthStatus,
    PatchPackage,
    Platform,
)
from patchdeploy.services.collaborators import InMemoryConnectionRegistry, InMemoryPatchSource
from patchdeploy.services.credential_service import CredentialVault
from patchdeploy.services.deployment_service import DeploymentEngine
from patchdeploy.services.health_monitor import HealthChecker, HealthScorer
from patchdeploy.services.transports import TransportRegistry
from patchdeploy.services.transports.base import TransportAdapter

SITE_URL = "https://shop.example.com"

ORIGINAL_ASSETS = {
    "theme.css": "a:focus { outline: none; }\n",
    "layout/theme.liquid": '<html><body><img src="logo.png"></body></html>',
}


class FakeTransport(TransportAdapter):
    """In-memory site with call recording and failure injection."""

    def __init__(self, credentials: CredentialVault, platform: Platform = Platform.CMS_API,
                 assets: Optional[Dict[str, str]] = None):
        super().__init__(credentials, max_attempts=3, backoff_min=0, backoff_max=0, timeout=1)
        self.platform = platform
        self.assets: Dict[str, str] = dict(assets or {})
        self.calls: List[tuple] = []
        self.fail_reads: Dict[str, Exception] = {}
        self.fail_writes: Dict[str, Exception] = {}
        self.fail_restores: Dict[str, Exception] = {}
        self.write_delay = 0.0

    def count(self, operation: str) -> int:
        return len([call for call in self.calls if call[0] == operation])

    async def read_asset(self, connection, credentials, asset_key):
        self.calls.append(("read", asset_key))
        if asset_key in self.fail_reads:
            raise self.fail_reads[asset_key]
        return self.assets.get(asset_key)

    async def write_asset(self, connection, credentials, asset_key, content):
        self.calls.append(("write", asset_key))
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if asset_key in self.fail_writes:
            raise self.fail_writes[asset_key]
        self.assets[asset_key] = content

    async def delete_asset(self, connection, credentials, asset_key):
        self.calls.append(("delete", asset_key))
        self.assets.pop(asset_key, None)

    async def apply(self, connection, change):
        self.calls.append(("apply", change.asset_key))
        return await super().apply(connection, change)

    async def restore(self, connection, backup: Backup):
        self.calls.append(("restore", backup.asset_key))
        if backup.asset_key in self.fail_restores:
            raise self.fail_restores[backup.asset_key]
        return await super().restore(connection, backup)


class ScriptedHealthChecker(HealthChecker):
    """
    Returns scripted samples in order, then a default.

    Script entries are either a HealthStatus or an overall score.
    """

    SCORES = {HealthStatus.HEALTHY: 95.0, HealthStatus.WARNING: 70.0, HealthStatus.CRITICAL: 20.0}

    def __init__(self, script: Optional[List[Union[HealthStatus, float]]] = None,
                 default: Union[HealthStatus, float] = HealthStatus.HEALTHY):
        super().__init__(scorer=HealthScorer(weights={"connectivity": 1, "performance": 1, "functionality": 1}))
        self.script = list(script or [])
        self.default = default
        self.calls = 0

    def push(self, *entries: Union[HealthStatus, float]) -> None:
        self.script.extend(entries)

    async def check(self, site_url: str) -> HealthSample:
        self.calls += 1
        entry = self.script.pop(0) if self.script else self.default
        score = self.SCORES[entry] if isinstance(entry, HealthStatus) else float(entry)
        return HealthSample(
            connectivity_score=score,
            performance_score=score,
            functionality_score=score,
            overall_score=score,
            status=self.scorer.classify(score),
            status_code=200,
            response_time_ms=50,
        )


async def wait_for_status(engine: DeploymentEngine, deployment_id: str, status: DeploymentStatus,
                          timeout: float = 2.0):
    """Poll until a deployment reaches ``status``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        record = await engine.get_status(deployment_id)
        if record.status == status:
            return record
        await asyncio.sleep(0.005)
    raise AssertionError(f"Deployment {deployment_id} never reached {status.value}")


@pytest.fixture
def credentials(monkeypatch, tmp_path):
    monkeypatch.setenv("PATCHDEPLOY_CRED_SHOP_TOKEN", json.dumps({"access_token": "shpat_test"}))
    return CredentialVault(encryption_key=None, credentials_dir=str(tmp_path / "credentials"))


@pytest.fixture
def connection():
    return Connection(
        id="site-1",
        platform=Platform.CMS_API,
        endpoint="https://shop.example.com/admin/api/2024-01/themes/1",
        credential_ref="shop-token",
        site_url=SITE_URL,
    )


@pytest.fixture
def patch_package():
    return PatchPackage(
        id="patch-1",
        target_platform=Platform.CMS_API,
        source_scan_id="scan-1",
        changes=(
            FileChange(
                path="theme.css",
                selector="a:focus",
                change_kind=ChangeKind.REPLACE,
                before="outline: none;",
                after="outline: 2px solid #005fcc;",
            ),
            FileChange(
                path="layout/theme.liquid",
                selector="header > a > img",
                change_kind=ChangeKind.REPLACE,
                before='<img src="logo.png">',
                after='<img src="logo.png" alt="Shop logo">',
            ),
            FileChange(
                path="assets/skip-link.js",
                change_kind=ChangeKind.CREATE,
                after="document.body.prepend(skipLink);",
            ),
        ),
        risk_score=2,
    )


@pytest.fixture
def transport(credentials):
    return FakeTransport(credentials, assets=ORIGINAL_ASSETS)


@pytest.fixture
def transports(transport):
    return TransportRegistry([transport])


@pytest.fixture
def patch_source(patch_package):
    source = InMemoryPatchSource()
    source.add(patch_package)
    return source


@pytest.fixture
def connections(connection):
    registry = InMemoryConnectionRegistry()
    registry.add(connection)
    return registry


@pytest.fixture
def store():
    return InMemoryDeploymentStore()


@pytest.fixture
def health_checker():
    return ScriptedHealthChecker()


@pytest.fixture
def make_engine(patch_source, connections, transports, store, credentials, health_checker):
    def factory(**overrides):
        options = dict(
            patch_source=patch_source,
            connections=connections,
            transports=transports,
            store=store,
            credentials=credentials,
            health_checker=health_checker,
            monitoring_window=0.05,
            check_interval=0.01,
            critical_threshold=3,
        )
        options.update(overrides)
        return DeploymentEngine(**options)
    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()
