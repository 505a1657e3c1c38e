# setup.py
from setuptools import setup, find_packages

setup(
    name="safety_module",
    version="0.1.0",
    packages=find_packages(include=["safety_module", "safety_module.*"]),
    python_requires=">=3.9",
    install_requires=[
        "msgpack",            # state snapshots
        "plyvel",             # snapshot database
        "prometheus_client",  # monitoring
    ],
    extras_require={
        "test": ["pytest"],
    },
)
