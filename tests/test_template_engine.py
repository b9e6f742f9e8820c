"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from nodefleet.templates import TemplateEngine, TemplateError


def _unit_context(index: int) -> dict[str, object]:
    return {
        "instance_index": index,
        "service_user": f"safe{index}",
        "working_directory": f"/home/safe{index}",
        "exec_start": f"/home/safe{index}/upload-random-data.sh",
        "secret_key": f"secret-{index}",
        "environment": ["RUST_LOG=info"],
    }


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("systemd/uploader.service.j2", _unit_context(2))

    assert "Description=Autonomi uploader 2" in output
    assert "User=safe2" in output
    assert 'Environment="SECRET_KEY=secret-2"' in output
    assert 'Environment="RUST_LOG=info"' in output
    assert "ExecStart=/home/safe2/upload-random-data.sh" in output
    assert "\n\n\n" not in output


def test_missing_variable_raises_template_error() -> None:
    """StrictUndefined turns missing context keys into TemplateError."""
    engine = TemplateEngine.with_overrides(None)
    context = _unit_context(1)
    del context["secret_key"]

    with pytest.raises(TemplateError, match="uploader.service.j2"):
        engine.render_to_string("systemd/uploader.service.j2", context)


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "units" / "autonomi_uploader_1.service"

    changed = engine.render_to_path(
        "systemd/uploader.service.j2",
        destination,
        _unit_context(1),
        mode=0o700,
    )

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o700"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path(
        "systemd/uploader.service.j2",
        destination,
        _unit_context(1),
        mode=0o700,
    )
    assert changed_again is False


def test_render_to_path_rewrites_changed_content(tmp_path: Path) -> None:
    """Differing content replaces the file atomically."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "unit.service"
    destination.write_text("stale\n", encoding="utf-8")

    assert engine.render_to_path("systemd/uploader.service.j2", destination, _unit_context(3))
    assert "User=safe3" in destination.read_text(encoding="utf-8")
    assert [p.name for p in tmp_path.iterdir()] == ["unit.service"]


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "systemd" / "uploader.service.j2"
    override_template.parent.mkdir(parents=True, exist_ok=True)
    override_template.write_text("override {{ service_user }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    rendered = engine.render_to_string("systemd/uploader.service.j2", _unit_context(1))

    assert rendered == "override safe1"


def test_missing_override_dir_falls_back_to_builtin(tmp_path: Path) -> None:
    """A non-existent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    rendered = engine.render_to_string("systemd/uploader.service.j2", _unit_context(1))

    assert "Autonomi uploader 1" in rendered


def test_upload_script_template_execs_workload() -> None:
    """The uploader script hands off to the workload command."""
    engine = TemplateEngine.with_overrides(None)

    rendered = engine.render_to_string(
        "uploader/upload-random-data.sh.j2",
        {
            "nodefleet_bin": "/usr/local/bin/nodefleet",
            "autonomi_bin": "/usr/local/bin/autonomi",
            "working_directory": "/home/safe1",
            "metrics_file": "upload-metrics.csv",
            "file_size_kb": 512,
            "upload_interval": 5.0,
        },
    )

    assert rendered.startswith("#!/usr/bin/env bash\n")
    assert "exec /usr/local/bin/nodefleet uploaders run-workload" in rendered
    assert '--metrics-file "/home/safe1/upload-metrics.csv"' in rendered
    assert "--file-size-kb 512" in rendered
