import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch):
    """Fresh in-memory store, no current session and no turns for every test."""
    from src.capsule_compiler.core.turn_sequencer import get_turn_registry
    from src.capsule_compiler.infrastructure import events
    from src.capsule_compiler.infrastructure.surface_store import InMemorySurfaceStore, set_surface_store
    from src.capsule_compiler.services.inference_client import set_inference_client
    from src.capsule_compiler.services.prompt_service import clear_prompt_cache
    from src.capsule_compiler.services.session_service import get_session_registry

    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setattr(events, "_publisher", None)
    store = InMemorySurfaceStore()
    set_surface_store(store)
    get_session_registry().reset()
    get_turn_registry().reset()
    clear_prompt_cache()
    yield store
    set_surface_store(None)
    set_inference_client(None)
    get_session_registry().reset()
    get_turn_registry().reset()


@pytest.fixture
def store(_isolated_state):
    return _isolated_state


@pytest.fixture
def session_id(store):
    from src.capsule_compiler.services.session_service import get_session_registry

    return get_session_registry().create_session(store)
