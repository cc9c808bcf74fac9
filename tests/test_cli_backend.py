from __future__ import annotations

import base64
import json
import sys
from pathlib import Path

import allure
import pytest

from agent_jobs.orchestrator.backend import (
    CliProcessLauncher,
    LaunchRequest,
    build_agent_args,
    find_mcp_config,
    materialize_images,
    split_shell_command,
)
from agent_jobs.orchestrator.errors import SpawnError, ValidationError
from agent_jobs.orchestrator.models import (
    PLAN_MODE_TOOLS,
    AgentOptions,
    ImageAttachment,
    PermissionMode,
    ToolSettings,
)

pytestmark = [
    allure.epic("Process Backend"),
    allure.feature("Agent Command Rendering"),
]


def _allowed(args: list[str]) -> list[str]:
    return [args[index + 1] for index, arg in enumerate(args) if arg == "--allowedTools"]


def test_new_turn_selects_default_model_and_puts_input_last() -> None:
    args = build_agent_args("fix the build", AgentOptions())

    assert args == [
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        "sonnet",
        "--print",
        "--",
        "fix the build",
    ]


def test_resume_prepends_session_and_skips_model() -> None:
    args = build_agent_args(
        "continue",
        AgentOptions(model="opus", resume=True, tool_session_id="sess-1"),
    )

    assert args[:2] == ["--resume", "sess-1"]
    assert "--model" not in args
    assert args[-1] == "continue"


def test_mcp_config_flag_is_added_when_present(tmp_path: Path) -> None:
    config = tmp_path / ".claude.json"

    args = build_agent_args("hi", AgentOptions(), mcp_config_path=config)

    assert args[args.index("--mcp-config") + 1] == str(config)


def test_plan_mode_injects_minimal_allow_list() -> None:
    args = build_agent_args("plan it", AgentOptions(permission_mode=PermissionMode.PLAN))

    assert args[args.index("--permission-mode") + 1] == "plan"
    assert _allowed(args) == list(PLAN_MODE_TOOLS)


def test_plan_mode_keeps_explicit_allow_list() -> None:
    options = AgentOptions(
        permission_mode=PermissionMode.PLAN,
        tools=ToolSettings(allowed_tools=["Read"]),
    )

    assert _allowed(build_agent_args("x", options)) == ["Read"]


def test_skip_permissions_emits_flag_without_tool_lists() -> None:
    options = AgentOptions(tools=ToolSettings(skip_permissions=True))

    args = build_agent_args("x", options)

    assert "--dangerously-skip-permissions" in args
    assert "--allowedTools" not in args
    assert "--permission-mode" not in args


def test_disallowed_tools_are_forwarded() -> None:
    options = AgentOptions(tools=ToolSettings(disallowed_tools=["Bash", "Write"]))

    args = build_agent_args("x", options)

    assert [args[i + 1] for i, arg in enumerate(args) if arg == "--disallowedTools"] == [
        "Bash",
        "Write",
    ]


def test_options_reject_skip_permissions_with_tool_lists() -> None:
    with pytest.raises(ValidationError, match="skip_permissions"):
        AgentOptions.from_dict(
            {"tools": {"skip_permissions": True, "allowed_tools": ["Read"]}},
        )


def test_options_reject_resume_without_session_and_unknown_keys() -> None:
    with pytest.raises(ValidationError, match="resume requires"):
        AgentOptions.from_dict({"resume": True})
    with pytest.raises(ValidationError, match="Unknown agent option"):
        AgentOptions.from_dict({"temperature": 0.2})
    with pytest.raises(ValidationError, match="permission mode"):
        AgentOptions.from_dict({"permission_mode": "yolo"})


def test_split_shell_command_uses_plain_whitespace() -> None:
    assert split_shell_command("  npm   run build ") == ["npm", "run", "build"]
    assert split_shell_command('echo "a b"') == ["echo", '"a', 'b"']
    with pytest.raises(ValidationError):
        split_shell_command("   ")


def test_find_mcp_config_detects_global_and_project_servers(tmp_path: Path) -> None:
    config = tmp_path / ".claude.json"
    assert find_mcp_config(home=tmp_path) is None

    config.write_text(json.dumps({"mcpServers": {}}), "utf-8")
    assert find_mcp_config(home=tmp_path) is None

    config.write_text(
        json.dumps({"projects": {"/work": {"mcpServers": {"db": {"command": "x"}}}}}),
        "utf-8",
    )
    assert find_mcp_config(home=tmp_path) == config

    config.write_text("{not json", "utf-8")
    assert find_mcp_config(home=tmp_path) is None


def test_materialize_images_writes_files_and_lists_them(tmp_path: Path) -> None:
    payload = base64.b64encode(b"\x89PNG fake").decode("ascii")

    text = materialize_images(
        "describe this",
        [ImageAttachment(data=payload, mime_type="image/png")],
        working_dir=tmp_path,
    )

    image = tmp_path / ".agent_jobs" / "images" / "image_1.png"
    assert image.read_bytes() == b"\x89PNG fake"
    assert text.startswith("describe this\n\nAttached images:\n")
    assert str(image) in text


def test_materialize_images_rejects_invalid_base64(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="not valid base64"):
        materialize_images(
            "x",
            [ImageAttachment(data="***", mime_type="image/png")],
            working_dir=tmp_path,
        )


def test_launcher_reports_missing_executable(tmp_path: Path) -> None:
    request = LaunchRequest(
        argv=["definitely-not-a-real-binary-agent-jobs"],
        cwd=tmp_path,
        owner_id="u1",
        scope_id="p1",
        job_id="j1",
    )

    with pytest.raises(SpawnError, match="Command not found"):
        CliProcessLauncher().launch(request)


def test_launcher_exposes_scope_environment(tmp_path: Path) -> None:
    request = LaunchRequest(
        argv=[
            sys.executable,
            "-c",
            "import os; print(os.environ['USER_ID'], os.environ['PROJECT_ID'], "
            "os.environ['WORKING_DIR'])",
        ],
        cwd=tmp_path,
        owner_id="u1",
        scope_id="p1",
        job_id="j1",
    )

    handle = CliProcessLauncher().launch(request)
    output = handle.stdout.read().decode("utf-8").strip()

    assert handle.wait() == 0
    assert output == f"u1 p1 {tmp_path}"
