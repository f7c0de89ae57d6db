"""
Root conftest.py to set up Python path for pytest.

This runs before test collection, ensuring imports work correctly.
"""
import sys
import os

# Add backend directory to Python path FIRST
backend_dir = os.path.dirname(os.path.abspath(__file__))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

# Keep test runs from writing into /app/data or ./data
os.environ.setdefault('DOCKGUARD_DATA_DIR', os.path.join(backend_dir, '.pytest-data'))
