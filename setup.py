from setuptools import setup, find_packages

setup(
    name="bucketguard",
    version="0.1.0",
    packages=find_packages(include=["bucketguard", "bucketguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "fakeredis[lua]>=2.20",
        ],
    },
)
