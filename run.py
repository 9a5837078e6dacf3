import os
import logging
import uvicorn

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(levelname)-5s [%(name)s] %(message)s",
)

if __name__ == "__main__":
    uvicorn.run(
        "competency_eval.server:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("DEV_RELOAD", "0") == "1",
    )
