#!/usr/bin/env python3
"""
Quick runner for the sync service
=================================

Usage:
    python -m casesync.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting casesync service...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "casesync.api:app",
        host="127.0.0.1",
        port=8000,
        reload=True
    )
