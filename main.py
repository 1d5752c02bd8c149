"""Launch the shapefile ingest FastAPI server."""

import logging

import uvicorn

from shapefile_ingest.config import get_settings


def main():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run("shapefile_ingest.server:app", host="0.0.0.0", port=8000, reload=True)


if __name__ == "__main__":
    main()
