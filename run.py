# run.py
from gule.config import Config
from gule.main import app

if __name__ == "__main__":
    app.run(
        debug=Config.DEBUG,
        host=Config.FLASK_RUN_HOST,
        port=Config.FLASK_RUN_PORT,
    )
