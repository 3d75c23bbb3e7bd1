#!/usr/bin/env python3
"""
Run the ChurnOpp API server.

Usage:
    python scripts/run_api.py

Or with uvicorn directly:
    uvicorn churnopp.api:app --reload --host 0.0.0.0 --port 8000
"""

import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print("Starting ChurnOpp API server...")
    print("API docs will be available at: http://localhost:8000/docs")
    print("Collector endpoint: http://localhost:8000/api/events")
    print()

    uvicorn.run(
        "churnopp.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
