from fastapi import Request

from competency_eval.services.level_system import LevelSystem


def get_level_system(request: Request) -> LevelSystem:
    """The application's LevelSystem, built once in the server lifespan."""
    return request.app.state.level_system
