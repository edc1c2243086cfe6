import pytest
from fastapi.testclient import TestClient

from taskpilot.config_loader import ExecutorConfig, TaskPilotConfig
from taskpilot.executor import ExecutionNotFoundError
from taskpilot.models import ExecutionResult, ExecutionState
from taskpilot.server import create_app

VALID = {
    "taskId": "t1",
    "repoUrl": "https://github.com/acme/widgets.git",
    "branchName": "task/t1",
    "prompt": "Add pagination",
    "callbackUrl": "http://coordinator/callbacks/execution",
}


class RecordingAgent:
    def __init__(self):
        self.executed = []
        self.states: dict[str, ExecutionState] = {}

    def accept(self, request):
        execution_id = f"exec-{len(self.states) + 1}"
        self.states[execution_id] = ExecutionState(id=execution_id, task_id=request.task_id)
        return execution_id

    def execute(self, request, execution_id=None):
        self.executed.append((request, execution_id))
        self.states[execution_id].status = "completed"
        return ExecutionResult(task_id=request.task_id, success=True)

    def get_status(self, execution_id):
        return self.states.get(execution_id)

    def cancel(self, execution_id):
        if execution_id not in self.states:
            raise ExecutionNotFoundError(execution_id)
        self.states[execution_id].status = "cancelled"


@pytest.fixture
def agent():
    return RecordingAgent()


def _client(agent, token: str = "") -> TestClient:
    config = TaskPilotConfig(executor=ExecutorConfig(workspace_root="/tmp/ws", token=token))
    return TestClient(create_app(config, agent=agent))


def test_health(agent):
    response = _client(agent, token="secret").get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["workspace"] == "/tmp/ws"
    assert body["uptime"] >= 0
    assert "timestamp" in body


def test_execute_starts_background_run(agent):
    response = _client(agent).post("/execute", json=VALID)

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Execution started"
    assert body["taskId"] == "t1"

    # TestClient runs background tasks before returning
    request, execution_id = agent.executed[0]
    assert execution_id == body["executionId"]
    assert request.base_branch == "main"
    assert request.max_iterations == 10


@pytest.mark.parametrize("missing", ["taskId", "repoUrl", "branchName", "prompt"])
def test_execute_rejects_missing_fields(agent, missing):
    payload = {k: v for k, v in VALID.items() if k != missing}
    response = _client(agent).post("/execute", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing required fields: taskId, repoUrl, branchName, prompt"
    assert agent.executed == []


def test_execute_rejects_invalid_values(agent):
    response = _client(agent).post("/execute", json={**VALID, "maxIterations": 0})
    assert response.status_code == 400


def test_bearer_token_is_enforced(agent):
    client = _client(agent, token="secret")

    assert client.post("/execute", json=VALID).status_code == 401
    assert client.post("/execute", json=VALID, headers={"Authorization": "Bearer nope"}).status_code == 401
    ok = client.post("/execute", json=VALID, headers={"Authorization": "Bearer secret"})
    assert ok.status_code == 200


def test_status_and_cancel(agent):
    client = _client(agent)
    execution_id = client.post("/execute", json=VALID).json()["executionId"]

    status = client.get(f"/status/{execution_id}")
    assert status.status_code == 200
    assert status.json()["taskId"] == "t1"
    assert status.json()["status"] == "completed"

    cancelled = client.post(f"/cancel/{execution_id}")
    assert cancelled.json() == {"ok": True, "message": "Execution cancelled"}
    assert client.get(f"/status/{execution_id}").json()["status"] == "cancelled"


def test_unknown_execution_is_404(agent):
    client = _client(agent)
    assert client.get("/status/exec-nope").status_code == 404
    assert client.post("/cancel/exec-nope").status_code == 404
