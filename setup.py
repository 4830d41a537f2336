from setuptools import setup, find_packages

setup(
    name="bluegreen-orchestrator",
    version="0.1",
    packages=find_packages(include=["bluegreen", "bluegreen.*", "service", "service.*"]),
    package_data={"bluegreen": ["config.yaml"]},
    install_requires=[
        "fastapi",
        "uvicorn",
        "prometheus-client",
        "pydantic>=2",
        "python-dotenv",
        "pyyaml",
        "requests",
        "numpy",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ]
    }
)
