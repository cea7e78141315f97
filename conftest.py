"""
Root pytest configuration.

The environment has to be switched to testing before ``core.config`` is
imported anywhere, so the settings object picks the in-memory SQLite URL
and e-mail sending stays off.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ.setdefault("LOG_LEVEL", "WARNING")
