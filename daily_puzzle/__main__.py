"""Run the server: `python -m daily_puzzle`."""
import uvicorn

from . import config


def main() -> None:
    uvicorn.run("daily_puzzle.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
