from setuptools import setup, find_packages

setup(
    name="quotaguard",
    version="0.1.0",
    packages=find_packages(include=["quotaguard", "quotaguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette",
        "uvicorn[standard]",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx",
            "fakeredis[lua]>=2.20",
        ],
    },
)
