"""
FTP/FTPS transport for self-hosted sites.

``ftplib`` is blocking, so every call opens one session inside a worker
thread and closes it before returning.
"""
import asyncio
import io
import logging
import posixpath
from ftplib import FTP, FTP_TLS, error_perm, error_proto, error_reply, error_temp
from typing import Callable, Dict, List, Optional, Tuple, TypeVar
from urllib.parse import urlparse

from patchdeploy.core.errors import TransientTransportError, TransportError
from patchdeploy.models.deployment import Connection, Platform
from patchdeploy.services.transports.base import TransportAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PORT = 21


class FileTransferTransport(TransportAdapter):
    """Transport for sites reachable over FTP or explicit FTPS."""

    platform = Platform.FILE_TRANSFER

    def validate_connection(self, connection: Connection) -> List[str]:
        problems = super().validate_connection(connection)
        if connection.endpoint:
            host, port, _ = self._parse_endpoint(connection)
            if not host:
                problems.append("FTP endpoint must include a host")
            if not 0 < port < 65536:
                problems.append(f"FTP port {port} is out of range")
        return problems

    def _parse_endpoint(self, connection: Connection) -> Tuple[str, int, str]:
        """Split the endpoint into host, port and remote root directory."""
        endpoint = connection.endpoint
        if "://" not in endpoint:
            endpoint = f"ftp://{endpoint}"
        parsed = urlparse(endpoint)
        try:
            port = parsed.port or DEFAULT_PORT
        except ValueError:
            port = -1
        root = connection.options.get("root") or parsed.path or "/"
        return parsed.hostname or "", port, root

    def _remote_path(self, connection: Connection, asset_key: str) -> str:
        _, _, root = self._parse_endpoint(connection)
        return posixpath.join(root, asset_key.lstrip("/"))

    def _connect(self, connection: Connection, credentials: Dict[str, str]) -> FTP:
        host, port, _ = self._parse_endpoint(connection)
        secure = connection.options.get("secure", "").lower() in ("1", "true", "yes")
        ftp = FTP_TLS(timeout=self.timeout) if secure else FTP(timeout=self.timeout)
        ftp.connect(host, port)
        ftp.login(credentials.get("username", ""), credentials.get("password", ""))
        if secure:
            ftp.prot_p()
        return ftp

    async def _call(
        self,
        connection: Connection,
        credentials: Dict[str, str],
        asset_key: str,
        operation: Callable[[FTP, str], T],
    ) -> T:
        def run() -> T:
            ftp = self._connect(connection, credentials)
            try:
                return operation(ftp, self._remote_path(connection, asset_key))
            finally:
                try:
                    ftp.quit()
                except (OSError, EOFError, error_temp, error_perm):
                    ftp.close()

        try:
            return await asyncio.to_thread(run)
        except error_temp as e:
            raise TransientTransportError(f"FTP temporary failure for {asset_key}: {e}", asset_key=asset_key)
        except (error_perm, error_reply, error_proto) as e:
            raise TransportError(f"FTP refused operation on {asset_key}: {e}", asset_key=asset_key)
        except (OSError, EOFError) as e:
            raise TransientTransportError(f"FTP connection error for {asset_key}: {e}", asset_key=asset_key)

    async def read_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> Optional[str]:
        def retrieve(ftp: FTP, path: str) -> Optional[str]:
            buffer = io.BytesIO()
            try:
                ftp.retrbinary(f"RETR {path}", buffer.write)
            except error_perm as e:
                if str(e).startswith("550"):
                    return None
                raise
            return buffer.getvalue().decode("utf-8")

        return await self._call(connection, credentials, asset_key, retrieve)

    async def write_asset(
        self, connection: Connection, credentials: Dict[str, str], asset_key: str, content: str
    ) -> None:
        def store(ftp: FTP, path: str) -> None:
            self._ensure_directory(ftp, posixpath.dirname(path))
            ftp.storbinary(f"STOR {path}", io.BytesIO(content.encode("utf-8")))

        await self._call(connection, credentials, asset_key, store)
        logger.debug(f"Stored {asset_key} on {connection.endpoint}")

    async def delete_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> None:
        def remove(ftp: FTP, path: str) -> None:
            try:
                ftp.delete(path)
            except error_perm as e:
                if not str(e).startswith("550"):
                    raise

        await self._call(connection, credentials, asset_key, remove)

    @staticmethod
    def _ensure_directory(ftp: FTP, directory: str) -> None:
        """Create every missing directory on the way to ``directory``."""
        current = ""
        for part in directory.split("/"):
            if not part:
                current = current or "/"
                continue
            current = posixpath.join(current, part) if current else part
            try:
                ftp.mkd(current)
            except error_perm as e:
                # 550/521: already exists
                if not str(e).startswith(("550", "521")):
                    raise
