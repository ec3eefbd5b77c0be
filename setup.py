"""Setup configuration for softpurge."""

from setuptools import find_packages, setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="softpurge",
    version="1.0.0",
    author="softpurge contributors",
    description="Soft delete lifecycle and retention-based purge pipeline",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="",
    packages=find_packages(
        exclude=["tests", "tests.*", "examples", "examples.*", "docs"]
    ),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Database",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
    install_requires=[
        "sqlalchemy>=2.0.0",
        "pydantic>=2.0.0",
        "python-dateutil>=2.8.2",
        "click>=8.1.0",
        "rich>=13.7.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "pytest-asyncio>=0.21.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.4.0",
            "flake8>=6.0.0",
            "pre-commit>=3.3.0",
        ],
        "docs": [
            "sphinx>=7.0.0",
            "furo>=2023.9.10",
            "sphinx-copybutton>=0.5.2",
            "myst-parser>=2.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "softpurge=softpurge.cli:cli",
        ],
    },
    project_urls={},
)
