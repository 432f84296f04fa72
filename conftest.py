"""
Root conftest.py for the sales trend project.

Puts the service directory on sys.path so tests import the `app` package
the same way the service runs it, with or without an editable install.
"""

import sys
from pathlib import Path


def pytest_configure(config):
    """
    Add every service directory under services/ to sys.path.

    Each service ships a top-level `app` package, so only directories that
    contain one are added.
    """
    root_dir = Path(__file__).parent

    for service_path in sorted((root_dir / "services").iterdir()):
        if (service_path / "app" / "__init__.py").exists():
            service_dir = str(service_path)
            if service_dir not in sys.path:
                sys.path.insert(0, service_dir)
