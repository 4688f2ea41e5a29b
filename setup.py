#!/usr/bin/env python
# -*- encoding: utf-8 -*-
import re
from glob import glob
from os.path import basename, dirname, join, splitext

from setuptools import find_packages, setup


def read(*names, **kwargs):
    return open(
        join(dirname(__file__), *names), encoding=kwargs.get("encoding", "utf8")
    ).read()


def find_version(*file_paths):
    contents = read(*file_paths)
    match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", contents, re.M)
    if match:
        return match.group(1)
    raise RuntimeError("Unable to find version string.")


setup(
    name="frugal-aws-setup",
    python_requires=">=3.9",
    version=find_version("src", "frugalaws", "__init__.py"),
    license="",
    description="CLI to provision read-only IAM access for Frugal across AWS accounts",
    long_description="""`frugal-aws-setup` creates the IAM role or user that the Frugal
cost-monitoring product uses to read billing, metrics, and resource metadata.
It supports Workload Identity Federation with Google service accounts or IAM
users with access keys, provisions the same principal across the accounts of
an AWS Organization, and can undo everything it created.""",
    long_description_content_type="text/markdown",
    author="Pete Kazmier",
    author_email="opensource@fidelity.com",
    packages=find_packages("src"),
    package_dir={"": "src"},
    py_modules=[splitext(basename(path))[0] for path in glob("src/*.py")],
    include_package_data=True,
    zip_safe=False,
    classifiers=[
        # complete classifier list: http://pypi.python.org/pypi?%3Aaction=list_classifiers
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: Unix",
        "Operating System :: POSIX",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: System :: Systems Administration",
    ],
    keywords=["frugal", "aws", "iam", "cli"],
    install_requires=[
        "boto3>=1.12.39",
        "colorama",
        "PyYAML>=3.10",
    ],
    tests_require=["pytest", "pytest-mock", "freezegun"],
    extras_require={
        "test": ["pytest", "pytest-mock", "freezegun"],
    },
    entry_points={
        "console_scripts": [
            "frugal-aws-setup = frugalaws.cli:main",
        ]
    },
)
