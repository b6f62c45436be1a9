import re

import pytest

from src.capsule_compiler.domain.errors import NoActiveSession
from src.capsule_compiler.services.session_service import SessionRegistry, generate_session_id


def test_session_id_format():
    sid = generate_session_id()
    assert re.fullmatch(r"\d{13}-[0-9a-z]{6}", sid)
    assert generate_session_id() != sid


def test_create_session_becomes_current(store):
    registry = SessionRegistry()
    with pytest.raises(NoActiveSession):
        registry.require_current()
    first = registry.create_session(store)
    second = registry.create_session(store)
    assert registry.require_current() == second
    assert store.session_exists(first) and store.session_exists(second)
