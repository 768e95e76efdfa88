import uvicorn
import logging
import os
from dotenv import dotenv_values

# Only show ERROR and CRITICAL from uvicorn; the ledger logger owns the console
uvicorn_loggers = [
    logging.getLogger("uvicorn"),
    logging.getLogger("uvicorn.error"),
    logging.getLogger("uvicorn.access"),
    logging.getLogger("uvicorn.asgi"),
]

for uvicorn_logger in uvicorn_loggers:
    uvicorn_logger.setLevel(logging.ERROR)
    # Remove handlers to prevent duplicate output
    uvicorn_logger.handlers = []

config = dotenv_values(".env")

# Environment variables win over .env
REWARD_NODE_HOST = os.getenv("REWARD_NODE_HOST", config.get("REWARD_NODE_HOST", "127.0.0.1"))
REWARD_NODE_PORT = int(os.getenv("REWARD_NODE_PORT", config.get("REWARD_NODE_PORT", "3010")))

if __name__ == "__main__":
    uvicorn.run(
        "reward.node.main:app",
        host=REWARD_NODE_HOST,
        port=REWARD_NODE_PORT,
        reload=False,
        access_log=False,
        log_config=None
    )
