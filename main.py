import logging
import os
import sys
from dotenv import load_dotenv

# Load environment variables before all imports (DO NOT MOVE)
load_dotenv()

# Add the current directory to the Python path to make imports work properly
current_dir = os.path.dirname(os.path.abspath(__file__))
if current_dir not in sys.path:
    sys.path.insert(0, current_dir)

from server.fastapi_server import create_fastapi_app

logging.basicConfig(level=logging.INFO)

# Create FastAPI app
app = create_fastapi_app()


if __name__ == "__main__":
    import uvicorn

    logging.info(f"Using current directory: {current_dir}")

    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_level="info",
    )
