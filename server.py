"""
Sift — server runner.

Starts the FastAPI app from main.py under uvicorn. Bind address comes from
SIFT_HOST / SIFT_PORT (default 127.0.0.1:8000).
"""

import os

import uvicorn
from dotenv import load_dotenv

load_dotenv()


def main() -> None:
    uvicorn.run(
        "main:app",
        host=os.environ.get("SIFT_HOST", "127.0.0.1"),
        port=int(os.environ.get("SIFT_PORT", "8000")),
        reload=os.environ.get("SIFT_RELOAD", "") == "1",
    )


if __name__ == "__main__":
    main()
