"""Test helpers for Update Center tests."""

from tests.helpers.fakes import FakeClock, FakeInstaller, FakeInventory, snapshot

__all__ = ["FakeClock", "FakeInstaller", "FakeInventory", "snapshot"]
