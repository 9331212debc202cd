"""Setup script for the Payment Event Processor."""

from setuptools import setup, find_packages

setup(
    name="payment-events",
    version="1.0.0",
    description="Idempotent Stripe webhook processing for orders, subscriptions and rewards",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["payment_events", "payment_events.*"]),
    package_data={
        "payment_events": ["templates/email/*.html"],
        "payment_events.database": [
            "migrations/env.py",
            "migrations/script.py.mako",
            "migrations/versions/*.py",
        ],
    },
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.24.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "payment-events-api=payment_events.api.main:run",
            "payment-events-ledger-monitor=payment_events.workers.ledger_monitor:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
