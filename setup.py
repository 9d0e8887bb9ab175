"""
Fleet Control Plane
Autoscaling, health probing and traffic admission for a fleet of HTTP workers
"""

from setuptools import find_packages, setup

setup(
    name="fleet-control-plane",
    version="0.1.0",
    description="SAGE Fleet Control Plane for worker autoscaling and request routing",
    author="SAGE Project",
    license="Apache License 2.0",
    packages=find_packages(include=["fleet_control", "fleet_control.*"]),
    python_requires=">=3.11",
    install_requires=[
        "aiohttp>=3.9.0,<3.14",  # aioresponses (dev) breaks on 3.14 ClientResponse signature
        "psutil>=5.9.0",
        "pyyaml>=6.0",
        "redis>=5.0.1",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "aioresponses>=0.7.4",
            "ruff>=0.1.0",
        ],
    },
)
