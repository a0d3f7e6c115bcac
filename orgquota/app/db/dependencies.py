"""Database dependencies for FastAPI dependency injection.

Usage:
    from orgquota.app.db.dependencies import SessionDep

    @router.get("/summary")
    async def summary(session: SessionDep):
        ...
"""

from orgquota.app.db.async_session import SessionDep

__all__ = ["SessionDep"]
