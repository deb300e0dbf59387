"""Root conftest.py for pytest.

Puts the project root on sys.path (config/ and monitor/ are namespace
packages, core/ is a regular one) and pins the environment the settings
layer reads before any test module imports it.
"""
import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

os.environ.setdefault('TESTING', 'true')
# Retention would queue deletes on every started service context
os.environ.setdefault('RETENTION_ENABLED', 'false')
