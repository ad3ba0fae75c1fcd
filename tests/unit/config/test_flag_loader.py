"""Tests for the YAML feature flag catalogue loader."""

import pytest

from company_discovery.config.flag_loader import load_default_flags


@pytest.mark.unit
class TestLoadDefaultFlags:
    def test_bundled_catalogue(self) -> None:
        flags = {flag.key: flag for flag in load_default_flags()}

        assert len(flags) == 10
        assert flags["company_discovery"].rollout_percentage == 100
        assert flags["queue_system"].rollout_percentage == 85
        assert flags["new_ui_experiment"].rollout_percentage == 20
        assert flags["new_ui_experiment"].variant == "ui_test"
        assert all(flag.version == 1 for flag in flags.values())

    def test_missing_file(self, tmp_path) -> None:
        assert load_default_flags(tmp_path / "missing.yml") == []

    def test_empty_file(self, tmp_path) -> None:
        path = tmp_path / "flags.yml"
        path.write_text("", encoding="utf-8")
        assert load_default_flags(path) == []

    def test_flag_without_attributes(self, tmp_path) -> None:
        path = tmp_path / "flags.yml"
        path.write_text("bare_flag:\n", encoding="utf-8")

        [flag] = load_default_flags(path)
        assert flag.key == "bare_flag"
        assert flag.enabled is True

    @pytest.mark.parametrize(
        "content",
        [
            "flag: [unclosed",
            "- just\n- a list\n",
            "bad_flag:\n  rollout_percentage: 150\n",
        ],
    )
    def test_invalid_catalogue_raises(self, tmp_path, content) -> None:
        path = tmp_path / "flags.yml"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ValueError, match="flags.yml"):
            load_default_flags(path)
