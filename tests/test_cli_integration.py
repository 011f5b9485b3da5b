import json
import shlex
import sys
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from conductor.cli import cli
from conductor.config import load_config, save_config
from conductor.executors import RoleExecutor, RoleRequest
from conductor.models import Artifact


class FakeExecutor(RoleExecutor):
    def __init__(self, outputs: dict[str, Any] | None = None) -> None:
        self.outputs = outputs or {}

    async def invoke(self, role: str, request: RoleRequest) -> Artifact:
        if role == "builder" and request.port is not None:
            request.port.send("tester", {"ready": True})
        default = "APPROVED" if role == "critic" else f"{role} ok"
        output = self.outputs.get(role, default)
        if isinstance(output, dict):
            return Artifact(name=request.stage, role=role, data=output)
        return Artifact(name=request.stage, role=role, content=output)


ROLE_SCRIPT = """\
import json, os, sys
request = json.load(sys.stdin)
role = os.environ["CONDUCTOR_ROLE"]
if role == "critic":
    print("APPROVED")
elif role == "builder" and request["stage"] == "team-builder":
    print(json.dumps({"messages": [{"to": "tester", "payload": "build ready"}]}))
else:
    print(role, "finished", request["stage"])
"""


def _set_default_command(config_path: Path, command: str) -> None:
    config = load_config(config_path)
    config.executors.default_command = command
    save_config(config_path, config)


def _last_line(output: str) -> str:
    return [line for line in output.splitlines() if line.strip()][-1].strip()


def test_cli_task_lifecycle_and_run(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        "conductor.cli._build_executor", lambda config, repo_root, loop_state: FakeExecutor()
    )
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / "conductor.toml").exists()
    assert (tmp_path / ".tasks" / "backlog").is_dir()
    _set_default_command(tmp_path / "conductor.toml", "unused")

    add_result = runner.invoke(cli, ["task", "add", "Add audit log", "--priority", "1"])
    assert add_result.exit_code == 0
    task_id = _last_line(add_result.output)

    list_result = runner.invoke(cli, ["task", "list"])
    assert list_result.exit_code == 0
    assert task_id in list_result.output
    assert "backlog" in list_result.output

    promote_result = runner.invoke(cli, ["task", "promote", task_id])
    assert promote_result.exit_code == 0
    assert f"{task_id} -> ready" in promote_result.output

    run_result = runner.invoke(cli, ["run"])
    assert run_result.exit_code == 0, run_result.output
    assert f"Task: {task_id} -> done" in run_result.output
    iteration_id = run_result.output.split("Iteration: ", 1)[1].split()[0]

    show_result = runner.invoke(cli, ["task", "show", task_id])
    assert json.loads(show_result.output)["status"] == "done"

    report_result = runner.invoke(cli, ["report", iteration_id])
    assert report_result.exit_code == 0
    assert json.loads(report_result.output)["final_status"] == "done"

    reports_result = runner.invoke(cli, ["report"])
    assert iteration_id in reports_result.output

    messages_result = runner.invoke(cli, ["messages", iteration_id])
    assert messages_result.exit_code == 0
    assert "builder -> tester" in messages_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["tasks"]["done"] == 1
    assert status["loop_id"] == iteration_id

    empty_run = runner.invoke(cli, ["run"])
    assert empty_run.exit_code == 0
    assert "No runnable task." in empty_run.output


def test_cli_reports_blocked_task_and_unblock(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    executor = FakeExecutor({"critic": "REJECTED", "lead": "REJECT"})
    monkeypatch.setattr(
        "conductor.cli._build_executor", lambda config, repo_root, loop_state: executor
    )
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    _set_default_command(tmp_path / "conductor.toml", "unused")
    task_id = _last_line(runner.invoke(cli, ["task", "add", "Rewrite billing"]).output)

    run_result = runner.invoke(cli, ["run", "--task", task_id])
    assert run_result.exit_code == 0
    assert "-> blocked" in run_result.output
    assert "Escalation: plan rejected after max rounds" in run_result.output

    rerun = runner.invoke(cli, ["run", "--task", task_id])
    assert rerun.exit_code != 0
    assert "blocked" in rerun.output

    unblock_result = runner.invoke(cli, ["task", "unblock", task_id])
    assert unblock_result.exit_code == 0
    assert f"{task_id} -> in_progress" in unblock_result.output

    bad_promote = runner.invoke(cli, ["task", "promote", task_id])
    assert bad_promote.exit_code != 0
    assert "Illegal transition" in bad_promote.output


def test_cli_run_with_command_executor(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    script = tmp_path / "role.py"
    script.write_text(ROLE_SCRIPT, encoding="utf-8")
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    _set_default_command(
        tmp_path / "conductor.toml",
        f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}",
    )
    runner.invoke(cli, ["task", "add", "Wire up webhooks", "--ready"])

    run_result = runner.invoke(cli, ["run"])
    assert run_result.exit_code == 0, run_result.output
    assert "-> done" in run_result.output
    iteration_id = run_result.output.split("Iteration: ", 1)[1].split()[0]

    messages_result = runner.invoke(cli, ["messages", iteration_id])
    assert '"build ready"' in messages_result.output


def test_cli_without_executors_blocks_task(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    runner.invoke(cli, ["init"])
    task_id = _last_line(runner.invoke(cli, ["task", "add", "Nothing bound"]).output)

    run_result = runner.invoke(cli, ["run"])

    assert run_result.exit_code == 0
    assert f"Task: {task_id} -> blocked" in run_result.output
    assert "no executor bound for 'analyst'" in run_result.output


def test_cli_rejects_invalid_config(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "conductor.toml").write_text("[gates.style]\nreviewer = 'x'\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["task", "list"])

    assert result.exit_code != 0
    assert "Unknown gate kind" in result.output
