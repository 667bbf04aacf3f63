import argparse
import logging
import os

import uvicorn


def main() -> None:
    ap = argparse.ArgumentParser(description="twodlive server")
    ap.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    ap.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    ap.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "info"))
    args = ap.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("twodlive.server:create_app", factory=True,
                host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
