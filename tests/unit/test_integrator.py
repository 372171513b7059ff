"""Tests for folding agent work back into the project."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from agentfleet.core.models import Agent, Environment, IntegrationResult, IsolationKind, Task
from agentfleet.core.result import Err, Ok
from agentfleet.environments import EnvironmentProvider
from agentfleet.orchestration import integrator as integrator_module
from agentfleet.orchestration.integrator import ResultIntegrator
from tests.mocks.repo import git, make_config


async def _setup(root: Path) -> tuple[EnvironmentProvider, ResultIntegrator]:
    config = make_config(root)
    provider = EnvironmentProvider(config)
    (await provider.initialize()).unwrap()
    return provider, ResultIntegrator(provider, config)


async def _env(provider: EnvironmentProvider, agent_id: str, isolation: IsolationKind) -> Environment:
    match await provider.acquire(agent_id, isolation):
        case Ok(env):
            return env
        case Err(err):
            pytest.fail(f"acquire failed: {err}")


def _agent(agent_id: str, description: str = "change things") -> Agent:
    return Agent(agent_id=agent_id, kind="developer", task=Task(description=description))


class TestLineageMerge:
    @pytest.mark.asyncio
    async def test_merges_uncommitted_work(self, git_repo: Path) -> None:
        provider, integrator = await _setup(git_repo)
        env = await _env(provider, "AGENT_a", IsolationKind.WORKTREE)
        (env.path / "feature.txt").write_text("feature\n", encoding="utf-8")

        outcome = await integrator.integrate(env, _agent("AGENT_a"))

        assert outcome.result is IntegrationResult.MERGED
        assert outcome.commit == git(git_repo, "rev-parse", "HEAD")
        assert (git_repo / "feature.txt").read_text(encoding="utf-8") == "feature\n"
        assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"

    @pytest.mark.asyncio
    async def test_idempotent(self, git_repo: Path) -> None:
        provider, integrator = await _setup(git_repo)
        env = await _env(provider, "AGENT_a", IsolationKind.WORKTREE)
        (env.path / "feature.txt").write_text("feature\n", encoding="utf-8")
        agent = _agent("AGENT_a")

        first = await integrator.integrate(env, agent)
        head = git(git_repo, "rev-parse", "HEAD")
        second = await integrator.integrate(env, agent)

        assert second is first
        assert git(git_repo, "rev-parse", "HEAD") == head
        assert integrator.outcome_for("AGENT_a") is first

    @pytest.mark.asyncio
    async def test_no_changes(self, git_repo: Path) -> None:
        provider, integrator = await _setup(git_repo)
        env = await _env(provider, "AGENT_a", IsolationKind.WORKTREE)
        outcome = await integrator.integrate(env, _agent("AGENT_a"))
        assert outcome.result is IntegrationResult.MERGED
        assert outcome.details == "no changes"

    @pytest.mark.asyncio
    async def test_conflict_is_aborted_then_resolved(self, git_repo: Path) -> None:
        provider, integrator = await _setup(git_repo)
        first = await _env(provider, "AGENT_a", IsolationKind.WORKTREE)
        second = await _env(provider, "AGENT_b", IsolationKind.WORKTREE)
        (first.path / "README.md").write_text("from a\n", encoding="utf-8")
        (second.path / "README.md").write_text("from b\n", encoding="utf-8")

        assert (await integrator.integrate(first, _agent("AGENT_a"))).result is IntegrationResult.MERGED
        head = git(git_repo, "rev-parse", "HEAD")

        outcome = await integrator.integrate(second, _agent("AGENT_b"))
        assert outcome.result is IntegrationResult.CONFLICT_DETECTED
        assert outcome.conflicts == ("README.md",)
        # Nothing partially applied.
        assert git(git_repo, "rev-parse", "HEAD") == head
        assert git(git_repo, "status", "--porcelain") == ""
        assert (git_repo / "README.md").read_text(encoding="utf-8") == "from a\n"
        assert integrator.conflicted() == ["AGENT_b"]

        # Someone reconciles the agent branch out of band.
        git(second.path, "merge", "-X", "ours", "--no-edit", "main")

        match await integrator.resolve("AGENT_b"):
            case Ok(resolved):
                assert resolved.result is IntegrationResult.MERGED
            case Err(err):
                pytest.fail(f"resolve failed: {err}")
        assert (git_repo / "README.md").read_text(encoding="utf-8") == "from b\n"
        assert integrator.conflicted() == []
        assert provider.is_released(second)
        assert not second.path.exists()

    @pytest.mark.asyncio
    async def test_resolve_unknown_agent(self, git_repo: Path) -> None:
        _, integrator = await _setup(git_repo)
        assert (await integrator.resolve("AGENT_nobody")).is_err()


class TestCopyMerge:
    @pytest.mark.asyncio
    async def test_copies_changes_without_repo(self, plain_project: Path) -> None:
        provider, integrator = await _setup(plain_project)
        env = await _env(provider, "AGENT_a", IsolationKind.DIRECTORY)
        (env.path / "src" / "app.py").write_text("print('bye')\n", encoding="utf-8")
        (env.path / "docs").mkdir()
        (env.path / "docs" / "guide.md").write_text("# Guide\n", encoding="utf-8")
        (env.path / "README.md").unlink()

        outcome = await integrator.integrate(env, _agent("AGENT_a"))

        assert outcome.result is IntegrationResult.MERGED
        assert outcome.details == "copied 3 paths"
        assert outcome.commit is None
        assert (plain_project / "src" / "app.py").read_text(encoding="utf-8") == "print('bye')\n"
        assert (plain_project / "docs" / "guide.md").exists()
        assert not (plain_project / "README.md").exists()

    @pytest.mark.asyncio
    async def test_conflict_when_main_changed_same_path(self, plain_project: Path) -> None:
        provider, integrator = await _setup(plain_project)
        env = await _env(provider, "AGENT_a", IsolationKind.DIRECTORY)
        (env.path / "README.md").write_text("agent\n", encoding="utf-8")
        (env.path / "new.txt").write_text("new\n", encoding="utf-8")
        (plain_project / "README.md").write_text("human\n", encoding="utf-8")

        outcome = await integrator.integrate(env, _agent("AGENT_a"))

        assert outcome.result is IntegrationResult.CONFLICT_DETECTED
        assert outcome.conflicts == ("README.md",)
        assert (plain_project / "README.md").read_text(encoding="utf-8") == "human\n"
        assert not (plain_project / "new.txt").exists()

    @pytest.mark.asyncio
    async def test_directory_replaced_by_file(self, plain_project: Path) -> None:
        provider, integrator = await _setup(plain_project)
        env = await _env(provider, "AGENT_a", IsolationKind.DIRECTORY)
        shutil.rmtree(env.path / "src")
        (env.path / "src").write_text("flattened\n", encoding="utf-8")

        outcome = await integrator.integrate(env, _agent("AGENT_a"))

        assert outcome.result is IntegrationResult.MERGED
        assert (plain_project / "src").is_file()
        assert (plain_project / "src").read_text(encoding="utf-8") == "flattened\n"

    @pytest.mark.asyncio
    async def test_file_replaced_by_directory(self, plain_project: Path) -> None:
        provider, integrator = await _setup(plain_project)
        env = await _env(provider, "AGENT_a", IsolationKind.DIRECTORY)
        (env.path / "README.md").unlink()
        (env.path / "README.md").mkdir()
        (env.path / "README.md" / "index.md").write_text("# Index\n", encoding="utf-8")

        outcome = await integrator.integrate(env, _agent("AGENT_a"))

        assert outcome.result is IntegrationResult.MERGED
        assert (plain_project / "README.md").is_dir()
        assert (plain_project / "README.md" / "index.md").read_text(encoding="utf-8") == "# Index\n"

    @pytest.mark.asyncio
    async def test_shape_change_conflicts_with_new_main_file(self, plain_project: Path) -> None:
        provider, integrator = await _setup(plain_project)
        env = await _env(provider, "AGENT_a", IsolationKind.DIRECTORY)
        shutil.rmtree(env.path / "src")
        (env.path / "src").write_text("flattened\n", encoding="utf-8")
        (plain_project / "src" / "new.py").write_text("added = True\n", encoding="utf-8")

        outcome = await integrator.integrate(env, _agent("AGENT_a"))

        assert outcome.result is IntegrationResult.CONFLICT_DETECTED
        assert "src" in outcome.conflicts
        assert (plain_project / "src" / "app.py").read_text(encoding="utf-8") == "print('hello')\n"
        assert (plain_project / "src" / "new.py").exists()

    @pytest.mark.asyncio
    async def test_failed_copy_is_rolled_back(self, plain_project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        provider, integrator = await _setup(plain_project)
        env = await _env(provider, "AGENT_a", IsolationKind.DIRECTORY)
        (env.path / "README.md").write_text("agent\n", encoding="utf-8")
        (env.path / "docs").mkdir()
        (env.path / "docs" / "guide.md").write_text("# Guide\n", encoding="utf-8")
        (env.path / "src" / "app.py").write_text("print('bye')\n", encoding="utf-8")

        real_copy = shutil.copy2
        copies: list[Path] = []

        def _copy_once(src: Path, dst: Path) -> object:
            if copies:
                raise OSError(28, "No space left on device")
            copies.append(dst)
            return real_copy(src, dst)

        monkeypatch.setattr(integrator_module.shutil, "copy2", _copy_once)
        outcome = await integrator.integrate(env, _agent("AGENT_a"))
        monkeypatch.undo()

        assert outcome.result is IntegrationResult.REJECTED
        assert outcome.details.startswith("copy failed")
        assert copies == [plain_project / "README.md"]
        assert (plain_project / "README.md").read_text(encoding="utf-8") == "# Plain\n"
        assert (plain_project / "src" / "app.py").read_text(encoding="utf-8") == "print('hello')\n"
        assert not (plain_project / "docs").exists()
        assert list((make_config(plain_project).state_dir / "staging").iterdir()) == []

    @pytest.mark.asyncio
    async def test_commits_in_git_project(self, git_repo: Path) -> None:
        provider, integrator = await _setup(git_repo)
        env = await _env(provider, "AGENT_a", IsolationKind.DIRECTORY)
        (env.path / "notes.md").write_text("notes\n", encoding="utf-8")
        (git_repo / "scratch.txt").write_text("unrelated\n", encoding="utf-8")

        outcome = await integrator.integrate(env, _agent("AGENT_a", "write notes"))

        assert outcome.commit == git(git_repo, "rev-parse", "HEAD")
        assert git(git_repo, "log", "-1", "--format=%s") == "[AGENT_a] write notes"
        # Only the agent's paths are committed.
        assert git(git_repo, "status", "--porcelain") == "?? scratch.txt"
