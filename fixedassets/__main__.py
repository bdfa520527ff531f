"""Entry point for running the depreciation admin API."""
import os

import uvicorn

if __name__ == "__main__":
    from fixedassets.app import app
    uvicorn.run(app, host=os.environ.get("FIXEDASSETS_HOST", "0.0.0.0"), port=int(os.environ.get("FIXEDASSETS_PORT", "8001")))
