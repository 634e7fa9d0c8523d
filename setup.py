"""
Setup configuration for vmencrypt
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8')

setup(
    name="vmencrypt",
    version="1.0.0",
    author="vmencrypt contributors",
    author_email="",
    description="Deploy Azure VMs with Azure Disk Encryption or Server-Side Encryption with customer managed keys",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Information Technology",
        "Intended Audience :: System Administrators",
        "Topic :: Security :: Cryptography",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "PyYAML>=6.0",
        "jsonschema>=4.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.2.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "vmencrypt=vmencrypt.cli:main",
        ],
    },
    include_package_data=True,
    package_data={
        "vmencrypt": [
            "schemas/*.yaml",
        ],
    },
    zip_safe=False,
    keywords=[
        "azure",
        "arm-templates",
        "bicep",
        "infrastructure-as-code",
        "disk-encryption",
        "key-vault",
        "customer-managed-keys",
    ],
)
