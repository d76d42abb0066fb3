"""
Pytest configuration shared by every test module.
Forces the testing settings (in-memory SQLite, geocoding off) before the app is imported.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ["GEOCODING_ENABLED"] = "False"
os.environ.setdefault("JWT_SECRET", "test-secret")
