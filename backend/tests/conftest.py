"""Shared fixtures: an in-memory store, its repositories and a scope over it."""

import pytest

from fakes import FakeStore, fake_repositories, fake_scope


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def repos(store):
    return fake_repositories(store)


@pytest.fixture
def scope(store):
    return fake_scope(store)
