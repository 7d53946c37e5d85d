import uvicorn

from gatherings import config
from gatherings.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
