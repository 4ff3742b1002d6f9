"""Tests for the command-line runner."""
import argparse
import json

import pytest

import main as cli

CORPUS = {
    "sources": [
        {
            "id": f"doc-{i}",
            "title": f"Field notes {i}",
            "content": (
                "Remote work gives employees flexible schedules and more autonomy. "
                "Managers worry that remote work weakens team collaboration. "
                "Video meetings cause fatigue and reduce creative discussion."
            ),
            "year": 2022,
        }
        for i in range(3)
    ]
}


def _args(tmp_path, **overrides) -> argparse.Namespace:
    corpus = tmp_path / "corpus.json"
    corpus.write_text(json.dumps(CORPUS), encoding="utf-8")
    values = {
        "sources": str(corpus),
        "purpose": "q_methodology",
        "embedding_backend": "hashing",
        "concurrency": None,
        "output": None,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


def test_load_sources_accepts_list_or_wrapped(tmp_path):
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps(CORPUS), encoding="utf-8")
    bare = tmp_path / "bare.json"
    bare.write_text(json.dumps(CORPUS["sources"]), encoding="utf-8")

    assert [s.id for s in cli.load_sources(wrapped)] == ["doc-0", "doc-1", "doc-2"]
    assert [s.id for s in cli.load_sources(bare)] == ["doc-0", "doc-1", "doc-2"]


@pytest.mark.asyncio
async def test_run_prints_progress_and_writes_result(tmp_path, capsys):
    output = tmp_path / "result.json"
    code = await cli.run_extraction(_args(tmp_path, output=str(output)))

    assert code == 0
    printed = capsys.readouterr().out
    assert "Stage 1/6" in printed
    assert "Extraction Complete" in printed
    result = json.loads(output.read_text(encoding="utf-8"))
    assert result["purpose"] == "q_methodology"
    assert result["stats"]["total_sources"] == 3


@pytest.mark.asyncio
async def test_run_reports_configuration_errors(tmp_path, capsys):
    code = await cli.run_extraction(_args(tmp_path, purpose="astrology"))
    assert code == 1
    assert "ConfigurationError" in capsys.readouterr().err
