"""Tests for repository cloning helpers."""

from __future__ import annotations

import pytest
from conftest import FakeChannel

from tenantbox.errors import AuthError, CommandFailedError
from tenantbox.repos import (
    RepoEntry,
    analyze_clone_failure,
    clone_repository,
    github_auth_status,
    list_repositories,
    parse_repo_list,
    parse_status_username,
    validate_repository,
    validate_target_dir,
)
from tenantbox.types import ExecResult


class TestValidation:
    @pytest.mark.parametrize(
        ("given", "expected"),
        [
            ("octocat/hello-world", "octocat/hello-world"),
            (" octocat/hello.world.git ", "octocat/hello.world"),
            ("my_org/repo_1", "my_org/repo_1"),
        ],
    )
    def test_accepts_owner_repo(self, given, expected):
        assert validate_repository(given) == expected

    @pytest.mark.parametrize(
        "given",
        ["hello-world", "a/b/c", "../etc", "owner/..", "owner/repo; rm -rf /", ""],
    )
    def test_rejects_other_shapes(self, given):
        with pytest.raises(ValueError):
            validate_repository(given)

    def test_target_dir(self):
        assert validate_target_dir("projects/demo") == "projects/demo"
        for bad in ("", "/etc", "../up", "a/../../b", "--upload-pack=x"):
            with pytest.raises(ValueError):
                validate_target_dir(bad)


class TestAnalyzeCloneFailure:
    @pytest.mark.parametrize(
        ("output", "starts_with"),
        [
            ("GraphQL: Could not resolve to a Repository (repository not found)", "Repository not"),
            ("git@github.com: Permission denied (publickey).", "Permission denied"),
            ("HTTP 401: authentication required", "Permission denied"),
            ("fatal: destination path 'x' already exists", "Directory already exists"),
            ("ssh: connect to host github.com: Connection refused", "Network error"),
            ("", "Clone failed with no error message"),
            ("something odd", "Clone failed: something odd"),
        ],
    )
    def test_messages(self, output, starts_with):
        assert analyze_clone_failure(output).startswith(starts_with)


class TestCloneRepository:
    async def test_success(self):
        channel = FakeChannel()
        channel.run.return_value = ExecResult(exit_code=0, output="Cloning into 'hello-world'...\n")

        result = await clone_repository(
            channel, "session-42", "octocat/hello-world", token="gho_secret"
        )

        assert result.success
        assert result.target_directory == "hello-world"
        assert result.message == "Cloned octocat/hello-world into /workspace/hello-world"
        call = channel.run.call_args
        assert call.args == ("session-42", ["gh", "repo", "clone", "octocat/hello-world"])
        assert call.kwargs["env"] == {"GH_TOKEN": "gho_secret"}
        assert call.kwargs["workdir"] == "/workspace"

    async def test_token_is_not_in_argv(self):
        channel = FakeChannel()
        await clone_repository(channel, "session-42", "o/r", token="gho_secret", target_dir="dst")
        assert channel.commands() == [["gh", "repo", "clone", "o/r", "dst"]]

    async def test_failure_is_a_result(self):
        channel = FakeChannel()
        channel.run.return_value = ExecResult(exit_code=1, output="HTTP 404: Not Found\n")
        result = await clone_repository(channel, "session-42", "o/missing", token="t")
        assert not result.success
        assert result.message.startswith("Repository not found")

    async def test_invalid_input_never_runs(self):
        channel = FakeChannel()
        with pytest.raises(ValueError):
            await clone_repository(channel, "session-42", "o/r", token="t", target_dir="/etc")
        channel.run.assert_not_awaited()


class TestRepoList:
    def test_parse_tab_and_space_separated(self):
        output = (
            "octocat/hello-world\tMy first repo\tpublic\t2024-01-01T00:00:00Z\n"
            "\n"
            "octocat/spoon-knife    Fork me   please\n"
            "octocat/bare\n"
        )
        assert parse_repo_list(output) == [
            RepoEntry("octocat/hello-world", "My first repo"),
            RepoEntry("octocat/spoon-knife", "Fork me please"),
            RepoEntry("octocat/bare"),
        ]
        assert parse_repo_list(" \n ") == []

    def test_url(self):
        assert RepoEntry("octocat/hello-world").url == "https://github.com/octocat/hello-world"

    async def test_lists_with_token_in_env(self):
        channel = FakeChannel()
        channel.run.return_value = ExecResult(exit_code=0, output="o/r\tdesc\n")

        entries = await list_repositories(channel, "session-42", token="gho_secret", limit=10)

        assert entries == [RepoEntry("o/r", "desc")]
        call = channel.run.call_args
        assert call.args == ("session-42", ["gh", "repo", "list", "--limit", "10"])
        assert call.kwargs["env"] == {"GH_TOKEN": "gho_secret"}

    async def test_rejected_token(self):
        channel = FakeChannel()
        channel.run.return_value = ExecResult(
            exit_code=4, output="To get started with GitHub CLI, please run:  gh auth login\n"
        )
        with pytest.raises(AuthError):
            await list_repositories(channel, "session-42", token="gho_old")

    async def test_other_failure(self):
        channel = FakeChannel()
        channel.run.return_value = ExecResult(exit_code=1, output="HTTP 502\n")
        with pytest.raises(CommandFailedError) as exc_info:
            await list_repositories(channel, "session-42", token="t")
        assert exc_info.value.output == "HTTP 502\n"

    async def test_limit_must_be_positive(self):
        channel = FakeChannel()
        with pytest.raises(ValueError):
            await list_repositories(channel, "session-42", token="t", limit=0)
        channel.run.assert_not_awaited()


class TestAuthStatus:
    @pytest.mark.parametrize(
        ("output", "username"),
        [
            ("github.com\n  ✓ Logged in to github.com as octocat (oauth_token)\n", "octocat"),
            ("github.com\n  ✓ Logged in to github.com account octocat (GH_TOKEN)\n", "octocat"),
            ("  - Logged in to github.com as mona.\n", "mona"),
            ("github.com\n  ✓ Git operations configured\n", None),
        ],
    )
    def test_username(self, output, username):
        assert parse_status_username(output) == username

    async def test_authenticated(self):
        channel = FakeChannel()
        channel.run.return_value = ExecResult(
            exit_code=0, output="✓ Logged in to github.com account octocat (GH_TOKEN)\n"
        )
        status = await github_auth_status(channel, "session-42", token="gho_t")
        assert status.authenticated
        assert status.username == "octocat"
        assert channel.run.call_args.kwargs["env"] == {"GH_TOKEN": "gho_t"}

    async def test_not_authenticated(self):
        channel = FakeChannel()
        channel.run.return_value = ExecResult(
            exit_code=1, output="You are not logged into any GitHub hosts.\n"
        )
        status = await github_auth_status(channel, "session-42")
        assert not status.authenticated
        assert status.username is None
        assert channel.run.call_args.kwargs["env"] is None
