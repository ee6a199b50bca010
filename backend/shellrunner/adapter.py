from __future__ import annotations
import base64
import contextlib
import queue
import subprocess
import threading
import time
import uuid
from typing import Callable, Optional

from .errors import RemoteCommandError, TransportError
from .logging_config import logger
from .models import Credentials
from .validation import ps_quote

OutputCallback = Callable[[str], None]


class ShellTransport:
    """One live connection to the remote shell. Not thread-safe: the session
    manager guarantees a single caller at a time."""

    def connect(self, credentials: Optional[Credentials] = None) -> None:
        raise NotImplementedError

    def run(self, command: str, on_output: OutputCallback | None = None, timeout: float | None = None) -> str:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    @property
    def alive(self) -> bool:
        raise NotImplementedError


class PowerShellTransport(ShellTransport):
    """Persistent ``pwsh`` child process driven through stdin/stdout.

    Every command travels as a single base64 line wrapped in try/catch and
    framed by unique begin/end sentinels, so multi-line scripts and quoting in
    the payload never confuse the line protocol.
    """

    def __init__(
        self,
        executable: str = "pwsh",
        args: list[str] | None = None,
        init_script: str = "",
        service_identity: dict | None = None,
        connect_timeout: float = 120.0,
    ):
        self.executable = executable
        self.args = list(args) if args is not None else ["-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "-"]
        self.init_script = init_script
        self.service_identity = dict(service_identity or {})
        self.connect_timeout = connect_timeout
        self._proc: subprocess.Popen | None = None
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._reader: threading.Thread | None = None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def connect(self, credentials: Optional[Credentials] = None) -> None:
        cmd = [self.executable, *self.args]
        logger.info(f"Starting shell process: {' '.join(cmd)}")
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise TransportError(f"cannot start {self.executable}: {e}") from e
        self._lines = queue.Queue()
        self._reader = threading.Thread(target=self._read_loop, args=(self._proc, self._lines), daemon=True)
        self._reader.start()

        script = self.render_init_script(credentials)
        if script:
            try:
                self.run(script, timeout=self.connect_timeout)
            except RemoteCommandError as e:
                self.close()
                raise TransportError(f"session bootstrap failed: {e}") from e

    def render_init_script(self, credentials: Optional[Credentials] = None) -> str:
        if not self.init_script:
            return ""
        values = {
            "app_id": self.service_identity.get("app_id") or "",
            "tenant_id": self.service_identity.get("tenant_id") or "",
            "cert_thumbprint": self.service_identity.get("cert_thumbprint") or "",
            "organization": self.service_identity.get("organization") or "",
            "token": "",
            "token_type": "Bearer",
            "user_upn": "",
        }
        if credentials is not None:
            for key in ("token", "token_type", "organization", "user_upn"):
                value = getattr(credentials, key)
                if value:
                    values[key] = value
        # values land inside single-quoted literals of the template
        escaped = {k: ps_quote(str(v))[1:-1] for k, v in values.items()}
        return self.init_script.format(**escaped)

    @staticmethod
    def _read_loop(proc: subprocess.Popen, lines: "queue.Queue[str | None]") -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            lines.put(line)
        lines.put(None)

    def _frame(self, command: str, marker: str) -> str:
        encoded = base64.b64encode(command.encode("utf-8")).decode("ascii")
        return (
            f"Write-Output '{marker}:BEGIN'; "
            "try { $ErrorActionPreference = 'Stop'; "
            f"$__script = [Text.Encoding]::UTF8.GetString([Convert]::FromBase64String('{encoded}')); "
            "Invoke-Expression $__script | Out-String -Stream -Width 4096; "
            f"Write-Output '{marker}:END:0' }} "
            "catch { "
            f"Write-Output ('{marker}:ERR:' + ($_.Exception.Message -replace '\\r?\\n', ' ')); "
            f"Write-Output '{marker}:END:1' }}\n"
        )

    def run(self, command: str, on_output: OutputCallback | None = None, timeout: float | None = None) -> str:
        proc = self._proc
        if proc is None or proc.poll() is not None or proc.stdin is None:
            raise TransportError("shell process is not running")
        marker = f"__SR_{uuid.uuid4().hex}"
        try:
            proc.stdin.write(self._frame(command, marker))
            proc.stdin.flush()
        except (OSError, ValueError) as e:
            raise TransportError(f"cannot write to shell: {e}") from e

        deadline = None if timeout is None else time.monotonic() + timeout
        began = False
        error: str | None = None
        chunks: list[str] = []
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                line = self._lines.get(timeout=remaining)
            except queue.Empty:
                raise TransportError(f"command timed out after {timeout}s")
            if line is None:
                raise TransportError("shell process exited")
            text = line.rstrip("\r\n")
            if text == f"{marker}:BEGIN":
                began = True
                continue
            if not began:
                # prompt echo or leftovers from an earlier command
                continue
            if text.startswith(f"{marker}:ERR:"):
                error = text[len(marker) + 5:]
                continue
            if text.startswith(f"{marker}:END:"):
                break
            chunks.append(line if line.endswith("\n") else line + "\n")
            if on_output is not None:
                on_output(chunks[-1])

        if error is not None:
            raise RemoteCommandError(error)
        return "".join(chunks)

    def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.poll() is None:
            with contextlib.suppress(OSError, ValueError):
                assert proc.stdin is not None
                proc.stdin.write("exit\n")
                proc.stdin.flush()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=5)
        logger.info(f"Shell process closed (exit code {proc.returncode})")


def powershell_factory(settings) -> Callable[[], ShellTransport]:
    """Transport factory bound to the configured shell and service identity."""
    identity = {
        "app_id": settings.EXCHANGE_APP_ID,
        "tenant_id": settings.EXCHANGE_TENANT_ID,
        "cert_thumbprint": settings.EXCHANGE_CERT_THUMB,
        "organization": settings.EXCHANGE_ORGANIZATION,
    }

    def factory() -> ShellTransport:
        return PowerShellTransport(
            executable=settings.SHELL_EXECUTABLE,
            args=settings.SHELL_ARGS,
            init_script=settings.SESSION_INIT_SCRIPT,
            service_identity=identity,
            connect_timeout=settings.COMMAND_TIMEOUT_SECONDS,
        )

    return factory
