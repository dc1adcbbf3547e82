"""Tests for compose manifest detection."""

from __future__ import annotations

from pathlib import Path

from stackrun.runner import find_compose_file


def test_no_manifest_means_direct_run(tmp_path: Path) -> None:
    assert find_compose_file(tmp_path) is None


def test_candidate_order(tmp_path: Path) -> None:
    (tmp_path / "compose.yaml").write_text("services: {}\n")
    (tmp_path / "docker-compose.yaml").write_text("services: {}\n")
    assert find_compose_file(tmp_path) == tmp_path / "docker-compose.yaml"


def test_directory_with_manifest_name_is_ignored(tmp_path: Path) -> None:
    (tmp_path / "docker-compose.yml").mkdir()
    (tmp_path / "compose.yml").write_text("services: {}\n")
    assert find_compose_file(tmp_path) == tmp_path / "compose.yml"


def test_nested_manifest_not_considered(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "compose.yml").write_text("services: {}\n")
    assert find_compose_file(tmp_path) is None
