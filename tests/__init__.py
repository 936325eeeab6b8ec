"""Tests for tabstash components.

Unit tests run against in-memory collaborators and a virtual clock defined in
``conftest.py``; provider HTTP calls are faked with ``httpx.MockTransport``.
"""
