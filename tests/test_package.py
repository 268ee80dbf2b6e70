"""Tests for the package surface: version and lazy exports."""

import pytest

import routeguard
from routeguard.__version__ import VERSION_INFO, get_version


class TestPackage:
    """Tests for the routeguard top-level module."""

    def test_version(self):
        """The version string and tuple agree."""
        assert get_version() == routeguard.__version__
        assert ".".join(str(p) for p in VERSION_INFO) == routeguard.__version__

    def test_lazy_exports_resolve(self):
        """Every name in __all__ resolves to an object."""
        for name in routeguard.__all__:
            assert getattr(routeguard, name) is not None

    def test_lazy_export_identity(self):
        """Lazy exports are the objects defined in their modules."""
        from routeguard.engine import RoutingEngine
        from routeguard.exceptions import RecordNotFoundError

        assert routeguard.RoutingEngine is RoutingEngine
        assert routeguard.RecordNotFoundError is RecordNotFoundError

    def test_unknown_attribute(self):
        """Unknown names raise AttributeError."""
        with pytest.raises(AttributeError):
            routeguard.does_not_exist

    def test_dir_lists_exports(self):
        """dir() includes the public names."""
        assert "RoutingEngine" in dir(routeguard)
