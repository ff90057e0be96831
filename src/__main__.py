import os

import uvicorn


def main():
    uvicorn.run("src.api.main:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "10000")))


if __name__ == "__main__":
    main()
