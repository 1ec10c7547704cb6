from setuptools import setup, find_packages

setup(
    name="bucketgate",
    version="0.1.0",
    description="Distributed token bucket rate limiter backed by Redis",
    packages=find_packages(include=["bucketgate", "bucketgate.*"]),
    python_requires=">=3.11",
    install_requires=[
        "redis>=5.0.1",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "fastapi>=0.110",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
            "fakeredis[lua]>=2.20",
        ],
    },
)
