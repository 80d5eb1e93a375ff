from .position_routes import router as position_router

__all__ = ["position_router"]
