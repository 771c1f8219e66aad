from setuptools import setup, find_packages

setup(
    name="tasktrack-backend",
    version="0.1.0",
    packages=find_packages(include=["tasktrack", "tasktrack.*"]),
    install_requires=[
        "fastapi>=0.100.0",
        "uvicorn>=0.15.0",
        "pydantic>=2.0.0",
        "python-dotenv>=0.19.0",
        "pyyaml>=6.0",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23.0",
            "fakeredis[lua]>=2.21.0",
            "httpx>=0.24.0",
        ],
    },
    python_requires=">=3.8",
)
