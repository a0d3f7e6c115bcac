from setuptools import setup, find_packages

setup(
    name="orgquota",
    version="0.1.0",
    packages=find_packages(include=["orgquota", "orgquota.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg>=0.29",
        "aiosqlite>=0.19",
        "pydantic>=2.5",
        "pydantic-settings>=2.7",
        "typing_extensions>=4.8",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.26",
        ],
    },
)
