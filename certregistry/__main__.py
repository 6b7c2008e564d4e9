# certregistry/__main__.py
import logging

import uvicorn

from certregistry.settings import settings

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    uvicorn.run("certregistry.main:app", host=settings.HOST, port=settings.PORT)
