from __future__ import annotations

import os

import uvicorn

from homebase.app import app

if __name__ == "__main__":
  uvicorn.run(app,
              host=os.getenv("HOST", "0.0.0.0"),
              port=int(os.getenv("PORT", "8000")))
