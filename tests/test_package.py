"""
Tests for package metadata
==========================
pytest tests/test_package.py -v
"""

import importlib

import pytest

import dbrt

MODULES = [
    "dbrt", "dbrt.dbrt_errors", "dbrt.dbrt_config", "dbrt.dbrt_observation",
    "dbrt.dbrt_rotary", "dbrt.dbrt_visual", "dbrt.dbrt_kinematics",
    "dbrt.dbrt_fusion", "dbrt.dbrt_factory", "dbrt.dbrt_emulator", "dbrt.demo",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_header(name):
    doc = importlib.import_module(name).__doc__
    assert "Author: DBRT developers" in doc
    assert f"License: {dbrt.__license__}" in doc
