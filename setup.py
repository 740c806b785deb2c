"""
terrycore - a declarative-state reconciliation engine.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="terrycore",
    version="0.9.0",
    author="terrycore Contributors",
    description="Plans and applies declared resources against recorded state",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["terrycore", "terrycore.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.8",
    install_requires=[
        "python-hcl2>=4.3.0",
    ],
    extras_require={
        "gui": [
            "PySide6>=6.4.0",
        ],
        "dev": [
            "PySide6>=6.4.0",
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "pytest-qt>=4.2.0",
            "black>=22.0.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "gui_scripts": [
            "terrycore-viewer=terrycore.ui.app:main",
        ],
    },
)
