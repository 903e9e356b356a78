"""
Setup script for the form-relay service
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="form-relay",
    version="1.0.0",
    description="Form submission relay from HTTP to Google Sheets over a Redis job queue",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn>=0.29.0",
        "redis[hiredis]>=5.0.1",
        "pydantic>=2.5.0",
        "PyYAML>=6.0",
        "google-api-python-client>=2.100.0",
        "google-auth>=2.23.0",
        "google-auth-httplib2>=0.1.1",
        "httplib2>=0.22.0",
        "tzdata>=2023.3",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "httpx>=0.25.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "form-relay=form_relay.app:run",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
