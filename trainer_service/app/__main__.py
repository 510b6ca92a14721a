import uvicorn
from dotenv import load_dotenv

from trainer_service.core.config import load_settings
from trainer_service.core.logging import configure_logging


def main():
    load_dotenv()
    cfg = load_settings()
    configure_logging(cfg.get("logging", {}).get("level", "INFO"))
    api_cfg = cfg.get("app", {}).get("api", {})
    host = api_cfg.get("host", "127.0.0.1")
    port = api_cfg.get("port", 8080)
    uvicorn.run("trainer_service.app.http.api:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
