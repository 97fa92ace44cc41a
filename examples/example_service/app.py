from __future__ import annotations

import os

from fastapi import FastAPI

SERVICE_NAME = os.getenv("SERVICE_NAME", "example")
# Where this service actually answers health checks. Pointing a probe at any
# other path yields 404, which the engine treats exactly like a crash.
HEALTH_PATH = os.getenv("HEALTH_PATH", "/api/health")
PORT = int(os.getenv("PORT", "3001"))


def create_app(health_path: str = HEALTH_PATH) -> FastAPI:
    app = FastAPI(title=f"Example Service {SERVICE_NAME}")

    @app.get(health_path)
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/api/info")
    def info() -> dict[str, str]:
        return {
            "service": SERVICE_NAME,
            "port": str(PORT),
            "database_host": os.getenv("DATABASE_HOST", ""),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
