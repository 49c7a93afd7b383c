"""Shared fixtures: in-memory transport bindings and a two-server runtime."""

from typing import Dict

import pytest
import pytest_asyncio

from mcporter.config import ServerSpec
from mcporter.runtime import Runtime

from helpers import SERVERS, TOOLS, FakeBinding


@pytest.fixture
def bindings() -> Dict[str, FakeBinding]:
    return {}


@pytest.fixture
def factory(bindings):
    def build(spec: ServerSpec) -> FakeBinding:
        binding = FakeBinding(spec, TOOLS.get(spec.name, []))
        bindings[spec.name] = binding
        return binding

    return build


@pytest_asyncio.fixture
async def runtime(factory):
    rt = Runtime.create(servers=SERVERS, binding_factory=factory)
    yield rt
    await rt.close()
