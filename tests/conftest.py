"""
Shared test helpers.
"""

import pytest


class FakeCookieJar:
    """In-memory stand-in for the request/response cookie channel."""

    def __init__(self, initial=None):
        self.values = dict(initial or {})
        self.set_calls = []

    def get(self, name):
        return self.values.get(name)

    def set(self, name, value, *, path, httponly, max_age):
        self.values[name] = value
        self.set_calls.append({
            "name": name,
            "value": value,
            "path": path,
            "httponly": httponly,
            "max_age": max_age,
        })


@pytest.fixture
def cookie_jar():
    return FakeCookieJar()
