from setuptools import setup, find_packages

setup(
    name="kindred",
    version="0.1.0",
    packages=find_packages(include=["backend", "backend.*", "mobile", "mobile.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.115",
        "starlette>=0.40",
        "pydantic>=2.7",
        "pydantic-settings>=2.7",
        "httpx>=0.27",
        "redis>=5.0",
        "PyJWT>=2.8",
        "websockets>=13.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
        ],
    },
)
