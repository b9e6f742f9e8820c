"""Tests for unit file and uploader script generation."""
from __future__ import annotations

from pathlib import Path

import pytest

from nodefleet.descriptors import DescriptorGenerator, SecretMap
from nodefleet.instances import enumerate_instances, make_instance
from nodefleet.templates import TemplateEngine, TemplateError


@pytest.fixture
def generator(tmp_path: Path) -> DescriptorGenerator:
    """Return a generator writing under *tmp_path* without chown."""
    return DescriptorGenerator(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=tmp_path / "systemd",
        binary_dir=tmp_path / "bin",
        nodefleet_bin="/usr/local/bin/nodefleet",
        environment=("RUST_LOG=info",),
        set_owner=False,
    )


@pytest.fixture
def secrets() -> SecretMap:
    """Return a secret map for host ``alpha`` with three entries."""
    return SecretMap.from_mapping({"alpha": ["key-one", '"key-two"', "key-three"]})


def test_secret_map_strips_quotes_and_accepts_strings() -> None:
    """Quotes are removed and comma-separated strings are split."""
    secrets = SecretMap.from_mapping({"alpha": '"a","b"', "beta": ["c"]})

    assert secrets.secrets_for("alpha") == ["a", "b"]
    assert secrets.secret_for("beta", 1) == "c"


def test_secret_map_lookup_failures() -> None:
    """Unknown hosts, out-of-range indices and empty secrets are errors."""
    secrets = SecretMap(hosts={"alpha": ["a", ""]})

    with pytest.raises(TemplateError, match="no entry for host 'beta'"):
        secrets.secret_for("beta", 1)
    with pytest.raises(TemplateError, match="none for instance 3"):
        secrets.secret_for("alpha", 3)
    with pytest.raises(TemplateError, match="empty"):
        secrets.secret_for("alpha", 2)


@pytest.mark.parametrize(
    ("entries", "match"),
    [
        (["a", None], "Secret 2 for host 'alpha' must be a string"),
        ([2043453], "Secret 1 for host 'alpha' must be a string"),
        (["a", "  "], "Secret 2 for host 'alpha' is empty"),
        ("a,,b", "Secret 2 for host 'alpha' is empty"),
    ],
)
def test_secret_map_rejects_non_string_entries(entries: object, match: str) -> None:
    """Entries are never coerced into credentials."""
    with pytest.raises(TemplateError, match=match):
        SecretMap.from_mapping({"alpha": entries})


def test_secret_map_file_keeps_hex_keys_verbatim(tmp_path: Path) -> None:
    """Unquoted hex keys are read as text, not integers."""
    path = tmp_path / "secrets.yml"
    path.write_text("alpha:\n  - 0x1f2e3d\n  - 0017\n", encoding="utf-8")

    assert SecretMap.from_file(path).secrets_for("alpha") == ["0x1f2e3d", "0017"]


def test_secret_map_file_rejects_blank_entry(tmp_path: Path) -> None:
    """A blank list item fails instead of becoming a placeholder secret."""
    path = tmp_path / "secrets.yml"
    path.write_text("alpha:\n  -\n  - k2\n", encoding="utf-8")

    with pytest.raises(TemplateError, match="Secret 1 for host 'alpha' is empty"):
        SecretMap.from_file(path)


def test_secret_map_from_file(tmp_path: Path) -> None:
    """YAML secret files are parsed into host lists."""
    path = tmp_path / "secrets.yml"
    path.write_text("alpha:\n  - k1\n  - k2\n", encoding="utf-8")

    assert SecretMap.from_file(path).secrets_for("alpha") == ["k1", "k2"]


def test_secret_map_from_bad_file(tmp_path: Path) -> None:
    """Missing or malformed files raise TemplateError."""
    with pytest.raises(TemplateError):
        SecretMap.from_file(tmp_path / "missing.yml")

    path = tmp_path / "secrets.yml"
    path.write_text("- not\n- a mapping\n", encoding="utf-8")
    with pytest.raises(TemplateError, match="mapping"):
        SecretMap.from_file(path)


def test_descriptor_written_with_owner_only_mode(
    generator: DescriptorGenerator,
    secrets: SecretMap,
    tmp_path: Path,
) -> None:
    """New units embed the instance secret and are readable by the owner only."""
    instance = make_instance(2, home_root=tmp_path / "home")

    result = generator.ensure_service_descriptor(instance, secrets, "alpha")

    assert result.status == "written"
    assert result.changed is True
    unit = tmp_path / "systemd" / "autonomi_uploader_2.service"
    assert result.descriptor.path == unit
    assert result.descriptor.exists is True
    contents = unit.read_text(encoding="utf-8")
    assert 'Environment="SECRET_KEY=key-two"' in contents
    assert "User=safe2" in contents
    assert f"ExecStart={tmp_path / 'home' / 'safe2' / 'upload-random-data.sh'}" in contents
    assert unit.stat().st_mode & 0o777 == 0o700


def test_existing_descriptor_is_never_rewritten(
    generator: DescriptorGenerator,
    tmp_path: Path,
) -> None:
    """A unit on disk is left alone even if the secret map changed."""
    instance = make_instance(1, home_root=tmp_path / "home")
    original = SecretMap.from_mapping({"alpha": ["old"]})
    generator.ensure_service_descriptor(instance, original, "alpha")
    unit = tmp_path / "systemd" / "autonomi_uploader_1.service"
    before = unit.read_text(encoding="utf-8")

    result = generator.ensure_service_descriptor(
        instance, SecretMap.from_mapping({"alpha": ["rotated"]}), "alpha"
    )

    assert result.status == "skipped-existing"
    assert result.changed is False
    assert unit.read_text(encoding="utf-8") == before
    assert "rotated" not in before


def test_missing_secret_fails_even_when_unit_exists(
    generator: DescriptorGenerator,
    secrets: SecretMap,
    tmp_path: Path,
) -> None:
    """The credential lookup runs before the existence check."""
    instance = make_instance(4, home_root=tmp_path / "home")
    unit = tmp_path / "systemd" / "autonomi_uploader_4.service"
    unit.parent.mkdir(parents=True)
    unit.write_text("existing", encoding="utf-8")

    with pytest.raises(TemplateError, match="none for instance 4"):
        generator.ensure_service_descriptor(instance, secrets, "alpha")


def test_descriptor_dry_run_writes_nothing(
    generator: DescriptorGenerator,
    secrets: SecretMap,
    tmp_path: Path,
) -> None:
    """Dry runs report a write without creating the file."""
    instance = make_instance(1, home_root=tmp_path / "home")

    result = generator.ensure_service_descriptor(instance, secrets, "alpha", dry_run=True)

    assert result.status == "written"
    assert not result.descriptor.path.exists()


def test_upload_script_rendered_once(
    generator: DescriptorGenerator,
    tmp_path: Path,
) -> None:
    """Scripts are executable and re-rendering identical content is a no-op."""
    (instance,) = enumerate_instances(1, home_root=tmp_path / "home")

    assert generator.ensure_upload_script(instance) is True
    script = tmp_path / "home" / "safe1" / "upload-random-data.sh"
    assert script.stat().st_mode & 0o777 == 0o744
    text = script.read_text(encoding="utf-8")
    assert f'--autonomi-bin "{tmp_path / "bin" / "autonomi"}"' in text
    assert "exec /usr/local/bin/nodefleet uploaders run-workload" in text

    assert generator.ensure_upload_script(instance) is False
    assert generator.ensure_upload_script(instance, dry_run=True) is False


def test_upload_script_dry_run_reports_pending_change(
    generator: DescriptorGenerator,
    tmp_path: Path,
) -> None:
    """Dry runs detect a missing script without writing it."""
    instance = make_instance(1, home_root=tmp_path / "home")

    assert generator.ensure_upload_script(instance, dry_run=True) is True
    assert not generator.script_path(instance).exists()
