#!/usr/bin/python3
# Setup file for gitdump
# Copyright (C) 2025 gitdump contributors
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later

from setuptools import setup

tests_require = ["pytest"]


setup(
    name="gitdump",
    version="0.1.0",
    description="Recover git repositories from .git directories exposed over HTTP",
    license="Apache-2.0 OR GPL-2.0-or-later",
    python_requires=">=3.9",
    packages=["gitdump"],
    package_data={"": ["py.typed"]},
    install_requires=["urllib3>=1.26"],
    extras_require={"tests": tests_require},
    entry_points={"console_scripts": ["gitdump=gitdump.cli:_main"]},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX",
        "Topic :: Software Development :: Version Control",
    ],
)
