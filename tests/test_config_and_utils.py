"""Tests for TOML configuration loading and small helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from hybridrag.config import ALL_EXTENSIONS, EngineConfig, load_config
from hybridrag.errors import ConfigurationError
from hybridrag.hashing import blake2b_hex, document_id, hash_file, hash_text
from hybridrag.utils import format_bytes, parse_date, truncate_text


def _write(tmp_path: Path, body: str) -> Path:
    p = tmp_path / "config.toml"
    p.write_text(body, encoding="utf-8")
    return p


class TestEngineConfig:
    """Tests for EngineConfig.from_toml."""

    def test_defaults_from_empty_file(self, tmp_path: Path):
        cfg = EngineConfig.from_toml(_write(tmp_path, ""))
        assert cfg.rrf_k == 60
        assert cfg.top_k == 5
        assert cfg.extensions == ALL_EXTENSIONS
        assert cfg.pdf_empty_page_strategy == "keep"
        assert cfg.db_name == "knowledge.db"

    def test_sections_are_read(self, tmp_path: Path):
        cfg = EngineConfig.from_toml(_write(tmp_path, f"""
[storage]
data_dir = "{tmp_path.as_posix()}/store"

[sources]
extensions = [".MD", "py"]
ignore = ["build/"]

[chunking]
max_chunk_size = 800
overlap = 80

[embeddings]
requests_per_minute = 30
min_interval_ms = 0

[vision]
provider = "off"
pdf_empty_page_strategy = "vision"

[retrieval]
candidate_multiplier = 4

[ingest]
workers = 8
"""))
        assert cfg.data_dir == (tmp_path / "store").resolve()
        assert cfg.db_path == (tmp_path / "store" / "knowledge.db").resolve()
        assert cfg.extensions == ("md", "py")
        assert cfg.ignore == ("build/",)
        assert (cfg.max_chunk_size, cfg.overlap) == (800, 80)
        assert (cfg.requests_per_minute, cfg.min_interval_ms) == (30, 0)
        assert cfg.vision_provider == "off"
        assert cfg.pdf_empty_page_strategy == "vision"
        assert cfg.candidate_multiplier == 4
        assert cfg.workers == 8

    @pytest.mark.parametrize("body,message", [
        ("[chunking]\nmax_chunk_size = 50", "max_chunk_size"),
        ("[chunking]\nmax_chunk_size = 1000\noverlap = 600", "overlap"),
        ("[embeddings]\ndimensions = 512", "dimensions"),
        ("[embeddings]\nrequests_per_minute = 0", "requests_per_minute"),
        ("[embeddings]\nmin_interval_ms = -1", "min_interval_ms"),
        ("[embeddings]\njitter = 1.5", "jitter"),
        ("[vision]\npdf_empty_page_strategy = \"ocr\"", "pdf_empty_page_strategy"),
        ("[retrieval]\nrrf_k = 0", "rrf_k"),
        ("[ingest]\nworkers = 0", "workers"),
        ("[vision]\nprovider = \"tesseract\"", "vision provider"),
        ("[embeddings]\nprovider = \"openai\"", "embeddings provider"),
        ("[sources]\nextensions = []", "extensions"),
    ])
    def test_invalid_values(self, tmp_path: Path, body: str, message: str):
        with pytest.raises(ValueError, match=message):
            EngineConfig.from_toml(_write(tmp_path, body))

    def test_string_data_dir_is_expanded(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("HYBRIDRAG_TEST_HOME", str(tmp_path))
        cfg = EngineConfig(data_dir="$HYBRIDRAG_TEST_HOME/kb")
        assert cfg.data_dir == tmp_path / "kb"


class TestLoadConfig:
    """Tests for load_config error handling."""

    def test_missing_explicit_path(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "missing.toml")

    def test_malformed_toml(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            load_config(_write(tmp_path, "[storage\ndata_dir = 1"))

    def test_out_of_range_value_names_the_file(self, tmp_path: Path):
        p = _write(tmp_path, "[retrieval]\ntop_k = 0")
        with pytest.raises(ConfigurationError, match="top_k") as exc:
            load_config(p)
        assert str(p) in str(exc.value)

    def test_no_default_file_means_defaults(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert load_config() == EngineConfig()


class TestHashing:
    """Tests for content hashes and document ids."""

    def test_file_hash_matches_text_hash(self, tmp_path: Path):
        p = tmp_path / "a.txt"
        p.write_bytes("héllo".encode("utf-8"))
        assert hash_file(p) == hash_text("héllo") == blake2b_hex("héllo".encode("utf-8"))

    def test_file_hash_streams_in_blocks(self, tmp_path: Path):
        p = tmp_path / "big.bin"
        p.write_bytes(b"x" * 3000)
        assert hash_file(p, chunk_size=1024) == blake2b_hex(b"x" * 3000)

    def test_document_id_is_stable_and_positional(self):
        assert document_id("/a.md", 0) == document_id("/a.md", 0)
        assert document_id("/a.md", 0) != document_id("/a.md", 1)
        assert document_id("/a.md", 0) != document_id("/b.md", 0)
        assert len(document_id("/a.md", 0)) == 32


class TestUtils:
    def test_truncate_text(self):
        assert truncate_text("short  text\nhere") == "short text here"
        assert truncate_text("a" * 300, max_chars=10) == "a" * 10 + "..."

    def test_format_bytes(self):
        assert format_bytes(512) == "512 B"
        assert format_bytes(2048) == "2.00 KB"
        assert format_bytes(5 * 1024 ** 3) == "5.00 GB"

    def test_parse_date(self):
        assert parse_date("2024-03-01") == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert parse_date("2024-03-01T10:00:00+02:00").utcoffset().total_seconds() == 7200
        with pytest.raises(ValueError):
            parse_date("yesterday")

    def test_parse_date_end_of_day(self):
        assert parse_date("2024-01-31", end_of_day=True) == datetime(2024, 1, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)
        # An explicit time is kept as given
        assert parse_date("2024-01-31T08:00:00", end_of_day=True) == datetime(2024, 1, 31, 8, tzinfo=timezone.utc)
