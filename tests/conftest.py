"""Shared fixtures: an in-memory engine and a handful of flow definitions."""

import pytest

from flowrelay.collaborators import RecordingNotifier
from flowrelay.engine import RunEngine, StartContext
from flowrelay.models import Identity
from flowrelay.persistence import InMemoryRunRepository

STARTER = Identity.user("coordinator-1")


@pytest.fixture
def repository():
    return InMemoryRunRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(repository, notifier):
    return RunEngine(repository, notifier=notifier)


@pytest.fixture
def start_context():
    return StartContext(starter=STARTER, organization_id="org-1")


@pytest.fixture
def linear_definition():
    return {
        "id": "linear",
        "name": "Linear",
        "roles": [
            {"name": "Client", "resolution": {"type": "FIXED_CONTACT", "email": "Client@Example.com"}},
            {"name": "Owner", "resolution": {"type": "WORKSPACE_INITIALIZER"}},
        ],
        "steps": [
            {"id": "intake", "type": "FORM", "assignee": "Client", "due": {"value": 2, "unit": "days"}},
            {"id": "check", "type": "TODO", "assignee": "Owner"},
            {"id": "wrap-up", "type": "ACKNOWLEDGEMENT", "assignee": "Client"},
        ],
    }


@pytest.fixture
def approval_definition():
    """FORM -> APPROVAL(approved -> STEP_C, rejected -> STEP_D)."""
    return {
        "id": "approval",
        "roles": [{"name": "Requester", "resolution": {"type": "WORKSPACE_INITIALIZER"}}],
        "steps": [
            {"id": "STEP_A", "type": "FORM", "assignee": "Requester"},
            {
                "id": "STEP_B",
                "type": "APPROVAL",
                "assignee": "__coordinator__",
                "outcomes": {"approved": "STEP_C", "rejected": "STEP_D"},
            },
            {"id": "STEP_C", "type": "TODO", "assignee": "Requester"},
            {"id": "STEP_D", "type": "TODO", "assignee": "Requester"},
        ],
    }


@pytest.fixture
def parallel_definition():
    return {
        "id": "parallel",
        "steps": [
            {"id": "kickoff", "type": "TODO"},
            {"id": "split", "type": "PARALLEL_BRANCH"},
            {"id": "legal", "type": "TODO", "branchPath": "legal", "parallelGroup": "review"},
            {"id": "legal-sign", "type": "ESIGN", "branchPath": "legal", "parallelGroup": "review"},
            {"id": "finance", "type": "TODO", "branchPath": "finance", "parallelGroup": "review"},
            {"id": "join", "type": "TODO"},
        ],
    }


@pytest.fixture
def group_definition():
    def build(mode):
        return {
            "id": f"group-{mode.lower()}",
            "roles": [
                {"name": "A", "resolution": {"type": "FIXED_CONTACT", "email": "a@example.com"}},
                {"name": "B", "resolution": {"type": "FIXED_CONTACT", "email": "b@example.com"}},
                {"name": "C", "resolution": {"type": "FIXED_CONTACT", "email": "c@example.com"}},
            ],
            "steps": [
                {
                    "id": "sign-off",
                    "type": "APPROVAL",
                    "assignees": ["A", "B", "C"],
                    "completion": {"mode": mode},
                },
                {"id": "archive", "type": "TODO"},
            ],
        }

    return build
