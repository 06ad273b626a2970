"""Standalone tester suites; each module runs with ``python -m`` or pytest."""
