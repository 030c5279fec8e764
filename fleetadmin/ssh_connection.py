"""
SSH Connection Manager for Device Administration
================================================

This module provides SSH connection management using Paramiko for the
backup/restore and time synchronisation operations.

Features:
- Password authentication with bounded connect/auth/banner timeouts
- Host keys accepted without verification (devices are re-flashed and
  re-keyed routinely; accepted risk)
- Connect retry with backoff on network and SSH protocol errors;
  authentication failures are never retried
- Connect failures raised as DeviceLoginError or DeviceUnreachableError
- Remote command execution with exit status and stderr capture
- Per-command timeout on every channel read, write and exit-status wait
- Raw stdout/stdin streaming for manual file transfer
"""

import logging
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple

import paramiko

from .config import settings
from .error_handling import (
    DeviceLoginError, DeviceUnreachableError, RemoteCommandError, RetryConfig, retry_with_backoff
)

# Configure logging
logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024


@dataclass
class DeviceCredentials:
    """Device SSH connection parameters."""
    ip_address: str
    username: str
    password: str
    port: int = 22
    timeout: float = 10.0
    banner_timeout: float = 15.0


class RemoteShell:
    """Command execution and byte streaming over one SSH connection.

    Every command runs with ``command_timeout`` applied to its channel, so a
    stalled read, write or exit-status wait raises DeviceUnreachableError.
    """

    def __init__(self, client: paramiko.SSHClient, ip_address: str,
                 command_timeout: Optional[float] = None):
        self.client = client
        self.ip_address = ip_address
        self.command_timeout = command_timeout or settings.ssh_command_timeout

    def _timed_out(self, command: str, timeout: float) -> DeviceUnreachableError:
        logger.warning(f"{self.ip_address}: '{command}' timed out after {timeout:.0f}s")
        return DeviceUnreachableError(f"{self.ip_address}: '{command}' timed out after {timeout:.0f}s")

    @staticmethod
    def _exit_status(channel, timeout: float) -> int:
        if not channel.status_event.wait(timeout):
            raise socket.timeout("no exit status")
        return channel.recv_exit_status()

    def run(self, command: str, timeout: Optional[float] = None) -> Tuple[int, bytes, str]:
        """Run a command and return (exit status, stdout bytes, stderr text)."""
        timeout = timeout or self.command_timeout
        logger.debug(f"{self.ip_address}$ {command}")
        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            output = stdout.read()
            errors = stderr.read().decode("utf-8", errors="replace")
            exit_status = self._exit_status(stdout.channel, timeout)
        except socket.timeout:
            raise self._timed_out(command, timeout)
        return exit_status, output, errors

    def execute(self, command: str, timeout: Optional[float] = None) -> str:
        """Run a command, raising RemoteCommandError on a non-zero exit status."""
        exit_status, output, errors = self.run(command, timeout=timeout)
        if exit_status != 0:
            raise RemoteCommandError(command, exit_status, errors)
        return output.decode("utf-8", errors="replace")

    def stream_to(self, command: str, sink: BinaryIO) -> int:
        """Copy the command's standard output into ``sink``; returns bytes copied."""
        timeout = self.command_timeout
        logger.debug(f"{self.ip_address}$ {command} > (local)")
        copied = 0
        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            while True:
                chunk = stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                sink.write(chunk)
                copied += len(chunk)
            exit_status = self._exit_status(stdout.channel, timeout)
            if exit_status != 0:
                errors = stderr.read().decode("utf-8", errors="replace")
        except socket.timeout:
            raise self._timed_out(command, timeout)

        if exit_status != 0:
            raise RemoteCommandError(command, exit_status, errors)
        return copied

    def stream_from(self, command: str, source: BinaryIO) -> int:
        """Feed ``source`` into the command's standard input; returns bytes written."""
        timeout = self.command_timeout
        logger.debug(f"{self.ip_address}$ {command} < (local)")
        written = 0
        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            while True:
                chunk = source.read(CHUNK_SIZE)
                if not chunk:
                    break
                stdin.write(chunk)
                written += len(chunk)

            stdin.flush()
            stdin.channel.shutdown_write()
            exit_status = self._exit_status(stdout.channel, timeout)
            if exit_status != 0:
                errors = stderr.read().decode("utf-8", errors="replace")
        except socket.timeout:
            raise self._timed_out(command, timeout)

        if exit_status != 0:
            raise RemoteCommandError(command, exit_status, errors)
        return written

    def close(self):
        self.client.close()


class SSHConnectionManager:
    """Creates SSH sessions to devices."""

    def __init__(self, port: Optional[int] = None, timeout: Optional[float] = None,
                 connect_attempts: Optional[int] = None, command_timeout: Optional[float] = None):
        self.port = port or settings.ssh_port
        self.timeout = timeout or settings.ssh_timeout
        self.command_timeout = command_timeout or settings.ssh_command_timeout
        self.retry_config = RetryConfig(
            max_attempts=connect_attempts or settings.ssh_connect_attempts,
            base_delay=1.0,
            max_delay=5.0,
            retryable_exceptions=[paramiko.SSHException],
            non_retryable_exceptions=[paramiko.AuthenticationException],
        )

    def credentials(self, ip_address: str, username: str, password: str) -> DeviceCredentials:
        return DeviceCredentials(
            ip_address=ip_address,
            username=username,
            password=password,
            port=self.port,
            timeout=self.timeout,
        )

    def connect(self, credentials: DeviceCredentials) -> RemoteShell:
        """Open a connection, retrying transient network failures."""

        @retry_with_backoff(self.retry_config)
        def _connect() -> paramiko.SSHClient:
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    hostname=credentials.ip_address,
                    port=credentials.port,
                    username=credentials.username,
                    password=credentials.password,
                    timeout=credentials.timeout,
                    auth_timeout=credentials.timeout,
                    banner_timeout=credentials.banner_timeout,
                    look_for_keys=False,
                    allow_agent=False,
                )
            except Exception:
                client.close()
                raise
            return client

        start_time = time.time()
        try:
            client = _connect()
        except paramiko.AuthenticationException as e:
            raise DeviceLoginError(f"{credentials.ip_address}: SSH authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            raise DeviceUnreachableError(f"{credentials.ip_address}: SSH connection failed: {e}") from e

        logger.info(f"Connected to {credentials.ip_address} in {time.time() - start_time:.2f}s")
        return RemoteShell(client, credentials.ip_address, command_timeout=self.command_timeout)

    @contextmanager
    def session(self, ip_address: str, username: str, password: str):
        """Context manager yielding a RemoteShell that is closed on exit."""
        shell = self.connect(self.credentials(ip_address, username, password))
        try:
            yield shell
        finally:
            try:
                shell.close()
                logger.debug(f"Disconnected from {ip_address}")
            except Exception as e:
                logger.warning(f"Error disconnecting from {ip_address}: {e}")
