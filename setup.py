"""
Setup script for Bookgen Agent.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="bookgen-agent",
    version="1.0.0",
    author="ViSuReNa LLC",
    description="Bookgen Agent - book generation, publishing and audiobook job orchestration",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/visurena/bookgen-agent",
    packages=find_packages(exclude=["bookgen_agent.tests"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Text Processing",
        "Topic :: Multimedia :: Sound/Audio :: Speech",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "bookgen=bookgen_agent.cli:app",
        ],
    },
    include_package_data=True,
    package_data={
        "bookgen_agent": [
            "config/*.yaml",
        ],
    },
)
