"""Run the API server: ``python -m graphflow_api``."""

import uvicorn

from graphflow.config import API_HOST, API_PORT

if __name__ == "__main__":
    uvicorn.run("graphflow_api.main:app", host=API_HOST, port=API_PORT)
