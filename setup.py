from setuptools import setup, find_packages

setup(
    name="automation-engine",
    version="0.1.0",
    description="Execution engine for step-based automations with control flow, variables and cancellation",
    author="Automation Engine Team",
    packages=find_packages(include=["automation_engine", "automation_engine.*"]),
    install_requires=[
        "pydantic>=2.6.0",
        "PyYAML>=6.0",
        "aiohttp>=3.8.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.0.0",
        ],
    },
    python_requires=">=3.10",
)
