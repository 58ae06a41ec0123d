import contextvars


# Set while a turn or a cleanup step is operating on a project so that log
# lines can be attributed without threading the id through every call
CURRENT_PROJECT_ID_CONTEXTVAR: contextvars.ContextVar[str | None] = (
    contextvars.ContextVar("current_project_id", default=None)
)


def get_current_project_id() -> str | None:
    return CURRENT_PROJECT_ID_CONTEXTVAR.get()
