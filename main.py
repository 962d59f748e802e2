"""
Referral Engine - main entry point.
Imports and runs the FastAPI application from the referral_engine package.
"""
import os

import uvicorn

from referral_engine.main import app

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
