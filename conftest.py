"""
Root pytest configuration for Solace-AI CDS.

Sets up Python path and test environment variables for all test directories.
"""

import os
import sys
from pathlib import Path

# Set test environment variables before anything else imports settings
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("CDS_LOG_LEVEL", "DEBUG")

# Reference data must never be fetched over the network from tests
os.environ.setdefault("CDS_REFERENCE_SOURCE", "static")

# Project root
project_root = Path(__file__).parent

# Add project root to path so the services namespace package resolves
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))
