"""
Shell-session transport.

Drives the OpenSSH client as a subprocess. Each primitive is one remote
command: ``cat`` to read, a temp file plus ``mv`` to write, ``rm -f`` to
delete.
"""
import asyncio
import logging
import os
import posixpath
import shlex
import tempfile
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

from patchdeploy.core.config import settings
from patchdeploy.core.errors import TransientTransportError, TransportError
from patchdeploy.models.deployment import Connection, Platform
from patchdeploy.services.transports.base import TransportAdapter

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
# ssh exits with 255 when the connection itself failed
SSH_CONNECTION_ERROR = 255
ASSET_ABSENT_EXIT = 44


class ShellSessionTransport(TransportAdapter):
    """Transport for servers reachable over SSH."""

    platform = Platform.SHELL_SESSION

    def __init__(self, *args, ssh_binary: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.ssh_binary = ssh_binary or settings.SSH_BINARY

    def validate_connection(self, connection: Connection) -> List[str]:
        problems = super().validate_connection(connection)
        if connection.endpoint:
            host, port, root = self._parse_endpoint(connection)
            if not host:
                problems.append("SSH endpoint must include a host")
            if not 0 < port < 65536:
                problems.append(f"SSH port {port} is out of range")
            if not root.startswith("/"):
                problems.append("SSH remote root must be an absolute path")
        return problems

    def _parse_endpoint(self, connection: Connection) -> Tuple[str, int, str]:
        endpoint = connection.endpoint
        if "://" not in endpoint:
            endpoint = f"ssh://{endpoint}"
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

    @contextmanager
    def _identity_file(self, credentials: Dict[str, str]) -> Iterator[Optional[str]]:
        """Write the private key to a 0600 temp file for the duration of one call."""
        private_key = credentials.get("private_key")
        if not private_key:
            yield None
            return

        fd, path = tempfile.mkstemp(prefix="patchdeploy-key-")
        try:
            os.chmod(path, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(private_key if private_key.endswith("\n") else private_key + "\n")
            yield path
        finally:
            os.remove(path)

    def _build_command(
        self, connection: Connection, credentials: Dict[str, str], identity_file: Optional[str], remote_command: str
    ) -> Tuple[List[str], Optional[Dict[str, str]]]:
        host, port, _ = self._parse_endpoint(connection)
        host_key_checking = connection.options.get("strict_host_key_checking", "accept-new")

        command = [
            self.ssh_binary,
            "-p", str(port),
            "-o", f"ConnectTimeout={int(self.timeout)}",
            "-o", f"StrictHostKeyChecking={host_key_checking}",
        ]
        env = None
        if identity_file:
            command += ["-o", "BatchMode=yes", "-o", "IdentitiesOnly=yes", "-i", identity_file]
        elif credentials.get("password"):
            # Password logins go through sshpass, reading the secret from SSHPASS
            command = ["sshpass", "-e"] + command
            env = {**os.environ, "SSHPASS": credentials["password"]}
        command += [f"{credentials.get('username', '')}@{host}", remote_command]
        return command, env

    async def _run_remote(
        self,
        connection: Connection,
        credentials: Dict[str, str],
        asset_key: str,
        remote_command: str,
        stdin: Optional[bytes] = None,
    ) -> Tuple[int, bytes]:
        """
        Run one command on the remote host.

        Returns:
            The exit code and stdout of the remote command

        Raises:
            TransientTransportError: on timeouts or connection failures
        """
        with self._identity_file(credentials) as identity_file:
            command, env = self._build_command(connection, credentials, identity_file, remote_command)
            logger.debug(f"Running remote command on {connection.endpoint}: {remote_command}")

            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(input=stdin), timeout=self.timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                raise TransientTransportError(f"SSH command timed out for {asset_key}", asset_key=asset_key)

        if process.returncode == SSH_CONNECTION_ERROR:
            error_message = stderr.decode(errors="replace").strip()
            logger.warning(f"SSH connection to {connection.endpoint} failed: {error_message}")
            raise TransientTransportError(f"SSH connection failed for {asset_key}: {error_message}", asset_key=asset_key)
        return process.returncode, stdout

    def _raise_for_exit(self, asset_key: str, action: str, returncode: int) -> None:
        if returncode != 0:
            raise TransportError(f"Remote {action} of {asset_key} exited with {returncode}", asset_key=asset_key)

    async def read_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> Optional[str]:
        path = shlex.quote(self._remote_path(connection, asset_key))
        returncode, stdout = await self._run_remote(
            connection,
            credentials,
            asset_key,
            f"if [ -f {path} ]; then cat {path}; else exit {ASSET_ABSENT_EXIT}; fi",
        )
        if returncode == ASSET_ABSENT_EXIT:
            return None
        self._raise_for_exit(asset_key, "read", returncode)
        return stdout.decode("utf-8")

    async def write_asset(
        self, connection: Connection, credentials: Dict[str, str], asset_key: str, content: str
    ) -> None:
        remote_path = self._remote_path(connection, asset_key)
        path = shlex.quote(remote_path)
        directory = shlex.quote(posixpath.dirname(remote_path) or "/")
        temp_path = shlex.quote(f"{remote_path}.patchdeploy.tmp")
        returncode, _ = await self._run_remote(
            connection,
            credentials,
            asset_key,
            f"mkdir -p {directory} && cat > {temp_path} && mv -f {temp_path} {path}",
            stdin=content.encode("utf-8"),
        )
        self._raise_for_exit(asset_key, "write", returncode)

    async def delete_asset(self, connection: Connection, credentials: Dict[str, str], asset_key: str) -> None:
        path = shlex.quote(self._remote_path(connection, asset_key))
        returncode, _ = await self._run_remote(connection, credentials, asset_key, f"rm -f {path}")
        self._raise_for_exit(asset_key, "delete", returncode)
