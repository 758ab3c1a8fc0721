from __future__ import annotations

import os
from fastapi import FastAPI

from rlsmanager.api.api_app import router

# single FastAPI app lives here only
app = FastAPI(title="RLS Manager Rest API", version="1.0.0")
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("RLS_MANAGER_HOST", "0.0.0.0")
    port = int(os.getenv("RLS_MANAGER_PORT", "8090"))
    reload_flag = os.getenv("UVICORN_RELOAD", "0").strip().lower() in ("1", "true", "yes", "on")

    uvicorn.run(app, host=host, port=port, reload=reload_flag)
