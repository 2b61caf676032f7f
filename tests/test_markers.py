"""Tests for delete-marker stripping."""

from __future__ import annotations

import configparser
import json

import pytest
import yaml

from sopsfs.markers import DELETED_MARKER, strip_markers
from sopsfs.models import SopsFormat

M = DELETED_MARKER


def _json(value) -> str:
    return json.dumps(value, indent="\t") + "\n"


class TestJsonStrip:
    """Textual JSON stripping keeps untouched formatting and stays valid."""

    def test_no_marker_is_noop(self) -> None:
        content = _json({"a": {"b": "c"}, "l": [1, 2]})
        assert strip_markers(SopsFormat.JSON, content) == content

    def test_sole_key(self) -> None:
        out = strip_markers(SopsFormat.JSON, _json({"a": {"b": M}}))
        assert json.loads(out) == {"a": {}}

    def test_first_key(self) -> None:
        out = strip_markers(SopsFormat.JSON, _json({"x": M, "y": 1, "z": 2}))
        assert json.loads(out) == {"y": 1, "z": 2}

    def test_middle_key(self) -> None:
        out = strip_markers(SopsFormat.JSON, _json({"x": 0, "y": M, "z": 2}))
        assert json.loads(out) == {"x": 0, "z": 2}

    def test_last_key(self) -> None:
        out = strip_markers(SopsFormat.JSON, _json({"x": 0, "y": M}))
        assert json.loads(out) == {"x": 0}

    @pytest.mark.parametrize(
        "items, expected",
        [
            ([M], []),
            ([M, "b"], ["b"]),
            (["a", M, "c"], ["a", "c"]),
            (["a", M], ["a"]),
        ],
    )
    def test_array_elements(self, items, expected) -> None:
        out = strip_markers(SopsFormat.JSON, _json({"l": items}))
        assert json.loads(out) == {"l": expected}

    def test_compact_json(self) -> None:
        out = strip_markers(SopsFormat.JSON, '{"a":"1","b":"%s","c":"3"}' % M)
        assert json.loads(out) == {"a": "1", "c": "3"}

    def test_untouched_formatting_preserved(self) -> None:
        content = '{\n    "keep":   "spaced" ,\n    "drop": "%s"\n}\n' % M
        out = strip_markers(SopsFormat.JSON, content)
        assert '"keep":   "spaced"' in out
        assert json.loads(out) == {"keep": "spaced"}


class TestLineStrip:
    """Other text formats drop every line carrying the marker."""

    def test_yaml(self) -> None:
        content = yaml.safe_dump({"db": {"user": "admin", "password": M}}, sort_keys=False)
        out = strip_markers(SopsFormat.YAML, content)
        assert yaml.safe_load(out) == {"db": {"user": "admin"}}

    def test_yaml_list_item(self) -> None:
        content = "hosts:\n- a\n- %s\n- c\n" % M
        out = strip_markers(SopsFormat.YAML, content)
        assert yaml.safe_load(out) == {"hosts": ["a", "c"]}

    def test_dotenv(self) -> None:
        out = strip_markers(SopsFormat.DOTENV, "A=1\nB=%s\nC=3\n" % M)
        assert out == "A=1\nC=3\n"

    def test_ini(self) -> None:
        content = "[db]\nuser = admin\npassword = %s\n" % M
        out = strip_markers(SopsFormat.INI, content)
        parser = configparser.ConfigParser()
        parser.read_string(out)
        assert dict(parser["db"]) == {"user": "admin"}

    def test_last_line_without_newline(self) -> None:
        assert strip_markers(SopsFormat.DOTENV, "A=1\nB=%s" % M) == "A=1\n"

    def test_no_marker_is_noop(self) -> None:
        content = "A=1\nB=2\n"
        assert strip_markers(SopsFormat.DOTENV, content) == content


def test_binary_is_rejected() -> None:
    with pytest.raises(ValueError):
        strip_markers(SopsFormat.BINARY, M)
