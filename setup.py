# Terminal Broker Setup

from setuptools import setup, find_packages

setup(
    name="terminal-broker",
    version="1.0.0",
    packages=find_packages(include=["terminal_broker", "terminal_broker.*"]),
    install_requires=[
        "fastapi>=0.109.0",
        "uvicorn[standard]>=0.27.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "prometheus-client>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.26.0",
        ],
    },
    python_requires=">=3.11",
)
