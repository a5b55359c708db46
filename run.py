#!/usr/bin/env python3
"""Start the payments service with uvicorn."""
import os

import uvicorn

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("coachpay.main:app", host="0.0.0.0", port=port, log_level="info")
