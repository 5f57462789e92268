"""aidchain API routers.

- deliveries: delivery workflow actions and reads
"""

from aidchain.api.routers.deliveries import router as deliveries_router

__all__ = [
    "deliveries_router",
]
