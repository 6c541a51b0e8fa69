# LTCMS API
from ltcms.api.router import api_router

__all__ = ["api_router"]
