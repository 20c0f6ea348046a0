"""Setup script for Commerce Core."""

from setuptools import setup, find_packages

setup(
    name="commerce-core",
    version="1.0.0",
    description="Order, payment and inventory consistency core for a storefront backend",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.9",
    packages=find_packages(include=["commerce_core", "commerce_core.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
            "locust>=2.20.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "commerce-api=commerce_core.api.main:main",
            "commerce-webhook-dispatcher=commerce_core.workers.webhook_dispatcher:main",
            "commerce-reconciler=commerce_core.workers.reconciliation_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
