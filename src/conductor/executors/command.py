from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from conductor.executors.base import RoleExecutionFailure, RoleExecutor, RoleRequest
from conductor.models import Artifact, extract_json_objects

if TYPE_CHECKING:
    from conductor.channel import RolePort

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


class CommandExecutor(RoleExecutor):
    """Runs one shell command per role.

    The request goes to stdin as JSON. Stdout becomes the artifact content and
    the last JSON object line of stdout becomes its structured ``data``.

    Inside a team, stdout is read line by line while the process runs: a
    ``messages`` list on any JSON line (``{"to": ..., "payload": ...}``) is sent
    through the team port at once. Messages addressed to the role are appended
    as JSON lines to the file named by ``CONDUCTOR_INBOX``.
    """

    def __init__(
        self,
        commands: Mapping[str, str],
        *,
        default_command: str = "",
        working_directory: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.commands = dict(commands)
        self.default_command = default_command
        self.working_directory = working_directory
        self.env = dict(env) if env else None

    def build_command(self, role: str) -> list[str]:
        template = self.commands.get(role, self.default_command).strip()
        if not template:
            raise RoleExecutionFailure(f"No command configured for role '{role}'.", role=role)
        try:
            return shlex.split(template.replace("{role}", shlex.quote(role)))
        except ValueError as exc:
            raise RoleExecutionFailure(
                f"Command for role '{role}' could not be parsed: {exc}", role=role
            ) from exc

    def _build_env(self, role: str, request: RoleRequest) -> dict[str, str]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        env["CONDUCTOR_ROLE"] = role
        env["CONDUCTOR_STAGE"] = request.stage
        env["CONDUCTOR_TASK_ID"] = request.task.id
        return env

    @staticmethod
    def _parse_output(stdout: str) -> tuple[str, dict[str, Any]]:
        payloads = extract_json_objects(stdout)
        data = payloads[-1] if payloads else {}
        return stdout.strip(), data

    @staticmethod
    def _forward_messages(port: RolePort, line: str) -> None:
        for payload in extract_json_objects(line):
            outgoing = payload.get("messages")
            if not isinstance(outgoing, list):
                continue
            for item in outgoing:
                if isinstance(item, dict) and item.get("to"):
                    port.send(str(item["to"]), item.get("payload"))

    @staticmethod
    async def _relay_inbox(port: RolePort, path: Path) -> None:
        while True:
            message = await port.wait_message()
            if message is None:
                return
            line = json.dumps(message.to_dict(), ensure_ascii=False, default=str)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    @staticmethod
    async def _write_request(process: asyncio.subprocess.Process, body: bytes) -> None:
        assert process.stdin is not None
        try:
            process.stdin.write(body)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Role process %s exited before reading its request", process.pid)
        finally:
            process.stdin.close()

    async def _read_stdout(
        self, process: asyncio.subprocess.Process, port: RolePort | None
    ) -> str:
        assert process.stdout is not None
        lines: list[str] = []
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace")
            lines.append(line)
            if port is not None:
                self._forward_messages(port, line)
        return "".join(lines)

    async def invoke(self, role: str, request: RoleRequest) -> Artifact:
        command = self.build_command(role)
        payload = request.to_payload(role)
        env = self._build_env(role, request)
        port = request.port
        inbox_path: Path | None = None
        if port is not None:
            payload["inbox"] = [message.to_dict() for message in port.receive()]
            handle, name = tempfile.mkstemp(prefix=f"conductor-{role}-", suffix=".jsonl")
            os.close(handle)
            inbox_path = Path(name)
            env["CONDUCTOR_INBOX"] = name
        try:
            return await self._run(role, request, command, payload, env, inbox_path)
        finally:
            if inbox_path is not None:
                inbox_path.unlink(missing_ok=True)

    async def _run(
        self,
        role: str,
        request: RoleRequest,
        command: list[str],
        payload: dict[str, Any],
        env: dict[str, str],
        inbox_path: Path | None,
    ) -> Artifact:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise RoleExecutionFailure(
                f"Executable not found for role '{role}': {command[0]}", role=role
            ) from exc

        assert process.stderr is not None
        relay: asyncio.Task[None] | None = None
        if request.port is not None and inbox_path is not None:
            relay = asyncio.create_task(self._relay_inbox(request.port, inbox_path))
        try:
            _written, stdout, stderr_bytes = await asyncio.gather(
                self._write_request(
                    process, json.dumps(payload, ensure_ascii=False).encode("utf-8")
                ),
                self._read_stdout(process, request.port),
                process.stderr.read(),
            )
            await process.wait()
        except asyncio.CancelledError:
            # A timed-out or torn-down role must not leave its process behind.
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
                logger.info("Killed %s process %s after cancellation", role, process.pid)
            raise
        finally:
            if relay is not None:
                relay.cancel()
                await asyncio.gather(relay, return_exceptions=True)

        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise RoleExecutionFailure(
                f"Role '{role}' exited with code {process.returncode}: {stderr[-1000:]}",
                role=role,
                exit_code=process.returncode,
            )

        content, data = self._parse_output(stdout)
        return Artifact(name=request.stage, role=role, content=content, data=data)
