"""
Pytest configuration for the audioflow test suite.

Settings are read from the environment; locally they can be placed in the
project's .env file. Tests never talk to Google: Drive and Cloud Storage are
replaced with httpx mock transports and the transcoder with a small Python
child process.
"""

import sys
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


# Copies stdin to stdout unchanged, in whatever chunks arrive.
COPY_SCRIPT = """
import sys
src, dst = sys.stdin.buffer, sys.stdout.buffer
while True:
    chunk = src.read1(65536)
    if not chunk:
        break
    dst.write(chunk)
dst.flush()
"""

# Same as COPY_SCRIPT, with a four byte marker written first.
MARKER_SCRIPT = """
import sys
src, dst = sys.stdin.buffer, sys.stdout.buffer
dst.write(b"MRK!")
while True:
    chunk = src.read1(65536)
    if not chunk:
        break
    dst.write(chunk)
dst.flush()
"""

# Reads a little input, complains on stderr and exits with a failure status.
FAILING_SCRIPT = """
import sys
sys.stdin.buffer.read1(1024)
sys.stderr.write("Invalid data found when processing input\\n")
sys.stderr.flush()
sys.exit(3)
"""


def _python_command(script: str):
    return lambda: [sys.executable, "-c", script]


@pytest.fixture
def copy_transcoder():
    """Command factory for a transcoder that passes bytes through unchanged."""
    return _python_command(COPY_SCRIPT)


@pytest.fixture
def marker_transcoder():
    """Command factory for a transcoder that prefixes its output with b"MRK!"."""
    return _python_command(MARKER_SCRIPT)


@pytest.fixture
def failing_transcoder():
    """Command factory for a transcoder that exits with status 3."""
    return _python_command(FAILING_SCRIPT)
