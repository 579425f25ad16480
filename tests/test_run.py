import json
from unittest.mock import MagicMock

import pytest

from ra_agent import run
from ra_agent.client import Completion, ProviderError
from ra_agent.models import Message


@pytest.fixture
def fake_client(monkeypatch):
    monkeypatch.setattr(run, "load_dotenv", MagicMock())
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    client = MagicMock()
    client.complete.return_value = Completion(message=Message(role="assistant", content="hello"))
    factory = MagicMock(return_value=client)
    monkeypatch.setattr(run, "ChatClient", factory)
    return factory


def _config(factory):
    return factory.call_args.args[0]


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("argv", [[], ["help"]])
def test_help_exits_zero(argv, capsys):
    assert run.main(argv) == 0
    assert "usage: ra" in capsys.readouterr().out


@pytest.mark.parametrize(
    "argv",
    [
        ["--api-key", "k"],
        ["hi", "--exec", "--no-submit", "--api-key", "k"],
        ["hi", "--json", "--stream-json", "--api-key", "k"],
        ["hi"],
    ],
)
def test_usage_errors_exit_two(argv, fake_client):
    with pytest.raises(SystemExit) as exc_info:
        run.main(argv)
    assert exc_info.value.code == 2
    fake_client.assert_not_called()


def test_missing_cwd_is_usage_error(fake_client, tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        run.main(["hi", "--api-key", "k", "--cwd", str(tmp_path / "nope")])
    assert exc_info.value.code == 2


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def test_prompt_runs_without_submit(fake_client, tmp_path, capsys):
    code = run.main(["hi", "--api-key", "k", "--cwd", str(tmp_path), "--quiet"])

    assert code == 0
    assert capsys.readouterr().out == "hello\n"
    config = _config(fake_client)
    assert config.submit_enabled is False
    assert config.cwd == tmp_path.resolve()
    assert fake_client.call_args.args[1] == "k"

    logs = list(tmp_path.glob("ra-*.jsonl"))
    assert len(logs) == 1
    assert ":" not in logs[0].name
    records = [json.loads(line) for line in logs[0].read_text().splitlines()]
    assert records[0]["type"] == "run.started"
    assert records[-1]["type"] == "run.completed"


def test_prompt_file_enables_submit(fake_client, tmp_path, monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "from-env")
    task = tmp_path / "task.txt"
    task.write_text("do the thing")
    fake_client.return_value.complete.side_effect = [
        Completion(message=Message(role="assistant", content="not yet")),
        Completion.model_validate(
            {
                "message": {
                    "role": "assistant",
                    "tool_calls": [
                        {"id": "c1", "function": {"name": "submit", "arguments": '{"answer": "did it"}'}}
                    ],
                }
            }
        ),
    ]

    code = run.main(["--prompt-file", str(task), "--cwd", str(tmp_path), "--quiet"])

    assert code == 0
    assert _config(fake_client).submit_enabled is True
    assert fake_client.call_args.args[1] == "from-env"


def test_no_submit_overrides_prompt_file(fake_client, tmp_path):
    task = tmp_path / "task.txt"
    task.write_text("do the thing")
    run.main(["--prompt-file", str(task), "--no-submit", "--api-key", "k", "--cwd", str(tmp_path), "--quiet"])
    assert _config(fake_client).submit_enabled is False


def test_flags_reach_config(fake_client, tmp_path):
    run.main(
        [
            "hi",
            "--exec",
            "--api-key",
            "k",
            "--cwd",
            str(tmp_path),
            "--model",
            "openai/gpt-4o",
            "--temperature",
            "0.3",
            "--max-steps",
            "1",
            "--max-tool-output-chars",
            "500",
            "--enable-search",
            "--quiet",
        ]
    )
    config = _config(fake_client)
    assert config.submit_enabled is True
    assert config.model == "openai/gpt-4o"
    assert config.temperature == 0.3
    assert config.top_p is None
    assert config.max_steps == 1
    assert config.max_tool_output_chars == 500
    assert config.web_enabled is True


def test_stream_json_writes_events_to_stdout(fake_client, tmp_path, capsys):
    log_path = tmp_path / "logs" / "run.jsonl"
    code = run.main(
        ["hi", "--api-key", "k", "--cwd", str(tmp_path), "--stream-json", "--log-path", str(log_path)]
    )

    assert code == 0
    lines = capsys.readouterr().out.splitlines()
    assert [json.loads(line)["type"] for line in lines][-1] == "run.completed"
    assert "hello" not in lines
    assert len(log_path.read_text().splitlines()) == len(lines)


def test_json_prints_buffered_events_on_failure(fake_client, tmp_path, capsys):
    fake_client.return_value.complete.side_effect = ProviderError("Provider API error (HTTP 500)")
    code = run.main(["hi", "--api-key", "k", "--cwd", str(tmp_path), "--json"])

    assert code == 1
    records = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert records[-1]["type"] == "run.failed"
    assert records[-1]["error"] == "Provider API error (HTTP 500)"


def test_error_outcome_exits_one(fake_client, tmp_path, capsys):
    fake_client.return_value.complete.side_effect = ProviderError("boom")
    code = run.main(["hi", "--api-key", "k", "--cwd", str(tmp_path), "--quiet"])
    assert code == 1
    assert capsys.readouterr().out == "boom\n"


@pytest.mark.parametrize(
    "flag, value",
    [("--max-steps", "0"), ("--time-limit-sec", "0"), ("--max-tool-output-chars", "0")],
)
def test_out_of_range_limits_are_usage_errors(flag, value, fake_client, tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run.main(["hi", "--api-key", "k", "--cwd", str(tmp_path), flag, value])
    assert exc_info.value.code == 2
    assert f"invalid value for {flag}" in capsys.readouterr().err
    fake_client.assert_not_called()


def test_existing_log_path_is_usage_error(fake_client, tmp_path, capsys):
    log_path = tmp_path / "run.jsonl"
    log_path.write_text("keep me\n")
    with pytest.raises(SystemExit) as exc_info:
        run.main(["hi", "--api-key", "k", "--cwd", str(tmp_path), "--log-path", str(log_path)])
    assert exc_info.value.code == 2
    assert "failed to create log file" in capsys.readouterr().err
    assert log_path.read_text() == "keep me\n"
