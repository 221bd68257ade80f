"""Main entry point for running the ingestion hub API with auto-reload."""
import uvicorn

from be.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Environment: {settings.environment.value}")
    print(f"Database: {settings.db.url.split('@')[-1] if '@' in settings.db.url else settings.db.url}")
    print(f"Model gateway: {settings.gateway.base_url}")
    print(f"Ingest workers: {settings.ingest.max_workers}")
    print("-" * 50)

    uvicorn.run(
        "be.api:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["be", "ai", "config"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
