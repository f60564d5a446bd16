#!/usr/bin/env python3
"""
Local development server for the integration engine API.
Runs against a local SQLite database unless DATABASE_URL is set.
"""

import os
import sys
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

os.environ.setdefault('APP_ENV', 'dev')
os.environ.setdefault('LOG_JSON', 'false')

if __name__ == "__main__":
    import uvicorn
    from integration_engine.config import get_settings
    from integration_engine.infrastructure.db import Base, engine
    from integration_engine.models import tables  # noqa: F401

    settings = get_settings()
    # dev convenience; deployments run `alembic upgrade head`
    Base.metadata.create_all(engine)

    print("Starting Integration Engine API")
    print("Docs: http://localhost:8000/docs")
    print("Health Check: http://localhost:8000/health")
    print("Webhooks: POST http://localhost:8000/webhooks/{connector_id}")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "integration_engine.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level="info"
    )
