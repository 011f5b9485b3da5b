import asyncio

import pytest

from conductor.executors import RoleExecutor, RoleRequest
from conductor.models import Artifact, Task
from conductor.roles import ROLE_CHARTERS, RoleAgent, RoleRegistry, charter_for


class AnonymousExecutor(RoleExecutor):
    def __init__(self) -> None:
        self.contexts: list[dict] = []

    async def invoke(self, role: str, request: RoleRequest) -> Artifact:
        self.contexts.append(dict(request.context))
        return Artifact(name="", role="", content=f"did {request.stage}")


def test_agent_attributes_artifact_and_passes_charter() -> None:
    executor = AnonymousExecutor()
    agent = RoleAgent("security-auditor", executor)
    request = RoleRequest(stage="team-security-auditor", task=Task(id="t", description="d"))

    artifact = asyncio.run(agent.run(request))

    assert artifact.role == "security-auditor"
    assert artifact.name == "team-security-auditor"
    assert executor.contexts[0]["charter"] == ROLE_CHARTERS["security-auditor"]


def test_registry_prefers_specific_binding_over_default() -> None:
    specific = AnonymousExecutor()
    fallback = AnonymousExecutor()
    registry = RoleRegistry({"committer": specific}, default=fallback)

    assert registry.bind("committer").executor is specific
    assert registry.bind("tester").executor is fallback
    assert registry.has("anything")
    assert not registry.has("")


def test_registry_without_default_refuses_unbound_roles() -> None:
    registry = RoleRegistry({"planner": AnonymousExecutor()})

    assert registry.has("planner")
    assert not registry.has("critic")
    with pytest.raises(KeyError):
        registry.bind("critic")


def test_unknown_roles_have_no_charter() -> None:
    assert charter_for("planner")
    assert charter_for("astronaut") == ""
