"""Run the Courier API with uvicorn: ``python -m courier.api``."""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "courier.api:app",
        host=os.environ.get("COURIER_HOST", "0.0.0.0"),
        port=int(os.environ.get("COURIER_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
