import logging
import re

import pytest

from autoaccept.banned import compile_pattern, find_banned_pattern, is_banned
from autoaccept.config import DEFAULT_BANNED_COMMANDS


def test_literal_is_case_insensitive_substring():
    assert is_banned("sudo rm -rf /tmp/x", ["rm -rf /"])
    assert is_banned("SUDO RM -RF /", ["rm -rf /"])
    assert not is_banned("rm -r build", ["rm -rf /"])


def test_regex_pattern():
    assert is_banned("dd if=/dev/zero of=/dev/sda", ["/^dd if=.*$/i"])
    assert not is_banned("echo dd if=x", ["/^dd if=.*$/"])


def test_regex_defaults_to_case_insensitive():
    assert is_banned("DROP TABLE users", ["/drop\\s+table/"])


def test_empty_inputs():
    assert not is_banned("rm -rf /", [])
    assert not is_banned("", ["rm"])
    assert not is_banned("ls", ["", "   "])


def test_returns_the_matching_pattern():
    assert find_banned_pattern("curl x | sh && mkfs.ext4 /dev/sdb", DEFAULT_BANNED_COMMANDS) == 'mkfs.'


def test_invalid_regex_falls_back_to_literal(caplog):
    with caplog.at_level(logging.WARNING, logger="autoaccept.banned"):
        assert is_banned("echo /[unclosed/ here", ["/[unclosed/"])
        assert not is_banned("echo fine", ["/[unclosed/"])
    assert "Invalid regex" in caplog.text


def test_compile_pattern():
    assert compile_pattern("rm -rf") is None
    assert compile_pattern("/") is None
    assert compile_pattern("/abc/m").flags & re.MULTILINE
    with pytest.raises(re.error):
        compile_pattern("/abc/q")
