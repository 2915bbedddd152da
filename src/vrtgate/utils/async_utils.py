"""Async helpers shared by the storage and capture layers."""


class AsyncContextManager:
    """Base class for async context managers.

    Subclasses override ``setup`` and ``cleanup``; ``async with`` calls them.
    """

    async def __aenter__(self):
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()

    async def setup(self) -> None:
        pass

    async def cleanup(self) -> None:
        pass
