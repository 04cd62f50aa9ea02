"""
Unit tests for the command line helpers
"""
import logging

import pytest

from bulk_loader.cli import build_parser, read_json_lines
from bulk_loader.logging_setup import configure_logging


@pytest.mark.unit
def test_read_json_lines_skips_blank_lines(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text('{"id": 1, "name": "a"}\n\n{"id": 2, "name": "b"}\n')

    assert list(read_json_lines(path)) == [
        {"id": 1, "name": "a"},
        {"id": 2, "name": "b"},
    ]


@pytest.mark.unit
def test_read_json_lines_rejects_non_objects(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text('{"id": 1}\n[1, 2]\n')

    with pytest.raises(ValueError, match=":2:"):
        list(read_json_lines(path))


@pytest.mark.unit
def test_parser_leaves_unset_options_to_environment(tmp_path):
    args = build_parser().parse_args(["--input", str(tmp_path / "x.jsonl"), "--batch-size", "10"])

    assert args.batch_size == 10
    assert args.table is None
    assert args.max_degree is None


@pytest.mark.unit
def test_configure_logging_quiets_psycopg(monkeypatch):
    psycopg_logger = logging.getLogger("psycopg")
    monkeypatch.setattr(psycopg_logger, "level", logging.NOTSET)

    configure_logging("info")

    assert psycopg_logger.level == logging.WARNING
