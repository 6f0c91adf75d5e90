"""Tests for model discovery and shard grouping."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from lmgo.core.catalog import ModelCatalog, extract_base_name, scan_models
from lmgo.hub.errors import CatalogEmptyError, CatalogError, InvalidIndexError

from tests.conftest import write_model_files


def test_scan_groups_shards_and_orders_by_display_name(model_dir: Path) -> None:
    entries = scan_models(model_dir)

    assert [entry.display_name for entry in entries] == [
        "alpha.gguf",
        "beta.gguf",
        "big (2 shards)",
    ]
    assert [entry.index for entry in entries] == [0, 1, 2]

    big = entries[2]
    assert big.base_name == "big"
    assert big.shard_count == 2
    assert big.path == str((model_dir / "big-00001-of-00002.gguf").resolve())
    assert big.pattern == os.path.join(
        str(model_dir.resolve()), "big-?????-of-00002.gguf"
    )

    alpha = entries[0]
    assert alpha.base_name == "alpha"
    assert alpha.shard_count == 1
    assert alpha.filename == "alpha.gguf"
    assert os.path.isabs(alpha.path)


def test_single_shard_still_shows_shard_count(tmp_path: Path) -> None:
    write_model_files(tmp_path, ["solo-00001-of-00004.gguf"])

    (entry,) = scan_models(tmp_path)

    assert entry.display_name == "solo (1 shards)"
    assert entry.base_name == "solo"


def test_primary_part_is_smallest_path_even_if_first_shard_missing(tmp_path: Path) -> None:
    write_model_files(tmp_path, ["m-00003-of-00003.gguf", "m-00002-of-00003.gguf"])

    (entry,) = scan_models(tmp_path)

    assert entry.filename == "m-00002-of-00003.gguf"
    assert entry.display_name == "m (2 shards)"


def test_same_prefix_in_different_folders_stays_separate(tmp_path: Path) -> None:
    write_model_files(
        tmp_path,
        [
            "a/q-00001-of-00002.gguf",
            "a/q-00002-of-00002.gguf",
            "b/q-00001-of-00002.gguf",
        ],
    )

    entries = scan_models(tmp_path)

    assert [(entry.display_name, entry.shard_count) for entry in entries] == [
        ("q (1 shards)", 1),
        ("q (2 shards)", 2),
    ]


def test_extension_match_is_case_insensitive_and_other_files_ignored(tmp_path: Path) -> None:
    write_model_files(tmp_path, ["Upper.GGUF", "notes.txt", "weights.bin"])

    entries = scan_models(tmp_path)

    assert [entry.display_name for entry in entries] == ["Upper.GGUF"]
    assert entries[0].base_name == "Upper"


def test_recursive_flag_controls_subdirectories(tmp_path: Path) -> None:
    write_model_files(tmp_path, ["top.gguf", "nested/deep.gguf"])

    assert len(scan_models(tmp_path)) == 2
    assert [entry.display_name for entry in scan_models(tmp_path, recursive=False)] == ["top.gguf"]


def test_exclude_patterns_drop_matching_files(tmp_path: Path) -> None:
    write_model_files(
        tmp_path,
        ["keep.gguf", "mmproj-f16.gguf", "drafts/small.gguf", "vision/mmproj-q8.gguf"],
    )

    entries = scan_models(tmp_path, exclude_patterns=["mmproj-*", "drafts/"])

    assert [entry.display_name for entry in entries] == ["keep.gguf"]


def test_missing_directory_raises_catalog_error(tmp_path: Path) -> None:
    with pytest.raises(CatalogError):
        scan_models(tmp_path / "nope")


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("/m/llama-3-8b.Q4_K_M.gguf", "llama-3-8b.Q4_K_M"),
        ("/m/qwen-00001-of-00003.gguf", "qwen"),
        ("/m/README", "README"),
    ],
)
def test_extract_base_name(path: str, expected: str) -> None:
    assert extract_base_name(path) == expected


def test_catalog_lookup_and_find(model_dir: Path) -> None:
    catalog = ModelCatalog(model_dir)
    catalog.rescan()

    assert len(catalog) == 3
    assert catalog.get(1).display_name == "beta.gguf"
    with pytest.raises(InvalidIndexError):
        catalog.get(3)

    assert catalog.find("alpha.gguf") is catalog.get(0)
    assert catalog.find("big") is catalog.get(2)
    assert catalog.find("big-00001") is catalog.get(2)
    assert catalog.find("gamma") is None


def test_require_models_rejects_empty_directory(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()

    with pytest.raises(CatalogEmptyError):
        ModelCatalog(empty).require_models()
