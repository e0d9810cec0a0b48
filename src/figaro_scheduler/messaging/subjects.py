"""NATS subjects the scheduler uses to talk to the Figaro orchestrator."""


class Subjects:
    # Orchestrator API (request/reply): create a task and assign it to a worker
    API_DELEGATE = "figaro.api.delegate"

    # Task events (JetStream TASKS stream)
    @staticmethod
    def task_complete(task_id: str) -> str:
        return f"figaro.task.{task_id}.complete"

    @staticmethod
    def task_error(task_id: str) -> str:
        return f"figaro.task.{task_id}.error"
