from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

setup(
    name="pgls",
    version="0.1.0",
    description="Phylogenetic generalized least squares: covariance matrices from trees and correlated-residual regression.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["pgls", "pgls.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": ["pytest>=6.0", "flake8", "black", "mypy"],
        "test": ["pytest>=6.0"],
    },
    entry_points={
        "console_scripts": [
            "pgls=pgls.cli:main",
        ],
    },
)
