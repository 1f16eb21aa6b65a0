"""Setup script for talkgate (daemon) and tgctl (CLI)."""

from setuptools import setup

setup(
    name="talkgate",
    version="0.1.0",
    description="Voice command gate: confidence-gated, confirmed and audited actions with a local IPC broker",
    author="Talkgate Team",
    package_dir={
        "talkgate": "packages/common/talkgate",
        "tgctl": "packages/cli/tgctl",
    },
    packages=["talkgate", "talkgate.ipc", "tgctl"],
    install_requires=[
        "nats-py>=2.7.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "structlog>=24.1.0",
        "rapidfuzz>=3.0.0",
        "sentence-transformers>=2.2.0",
        "click>=8.1.7",
        "rich>=13.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "talkgate=talkgate.service:run",
            "tgctl=tgctl.main:main",
        ],
    },
    python_requires=">=3.10",
)
