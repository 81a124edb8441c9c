from setuptools import setup, find_packages

setup(
    name="cadence",
    version="0.1.0",
    packages=find_packages(include=["cadence", "cadence.*"]),
    python_requires=">=3.10",
    install_requires=[
        "sqlalchemy>=2.0",
        "alembic",
        "psycopg2-binary",
        "pydantic>=2",
        "pydantic-settings",
        "python-dateutil",
        "celery",
        "kombu",
        "prometheus-client",
        "tzdata",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
)
