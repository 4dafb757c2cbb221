"""Tests for vmsupervisor.ports module."""

from __future__ import annotations

import pytest

from vmsupervisor.exceptions import PortAllocationError
from vmsupervisor.ports import PortAllocator


@pytest.fixture
def allocator() -> PortAllocator:
    return PortAllocator("vnc", 5900, 5902, check_bind=False)


class TestPortAllocator:
    def test_allocates_lowest_free(self, allocator):
        assert allocator.allocate() == 5900
        assert allocator.allocate() == 5901
        allocator.release(5900)
        assert allocator.allocate() == 5900

    def test_exhausted(self, allocator):
        for _ in range(3):
            allocator.allocate()
        with pytest.raises(PortAllocationError, match="Unable to find an unused vnc port"):
            allocator.allocate()

    def test_double_release(self, allocator):
        port = allocator.allocate()
        allocator.release(port)
        with pytest.raises(PortAllocationError, match="was not allocated"):
            allocator.release(port)

    def test_release_zero_is_noop(self, allocator):
        allocator.release(0)

    def test_release_out_of_range(self, allocator):
        with pytest.raises(PortAllocationError, match="outside"):
            allocator.release(6000)

    def test_set_used_skips_port(self, allocator):
        allocator.set_used(5900)
        assert allocator.is_used(5900)
        assert allocator.allocate() == 5901
        with pytest.raises(PortAllocationError, match="already in use"):
            allocator.set_used(5900)

    def test_invalid_range(self):
        with pytest.raises(PortAllocationError, match="Invalid"):
            PortAllocator("vnc", 10, 5)
