"""
Entrypoint for running the backend server.
Set RESERVATION_SWEEP_INTERVAL_SECONDS to expire guest reservations in-process.
"""
import os

import uvicorn

from app.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
