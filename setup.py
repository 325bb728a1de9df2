#!/usr/bin/env python
# -*- coding: utf-8 -*-
# Copyright: (c) 2020 Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import os.path

from setuptools import setup


def abs_path(rel_path: str) -> str:
    return os.path.join(os.path.dirname(__file__), rel_path)


def get_version() -> str:
    version = {}
    with open(abs_path(os.path.join("authctx", "_version.py")), mode="r") as fd:
        exec(fd.read(), version)

    return version["__version__"]


with open(abs_path("README.md"), mode="rb") as fd:
    long_description = fd.read().decode("utf-8")


setup(
    name="pyauthctx",
    version=get_version(),
    packages=["authctx"],
    install_requires=[
        "cryptography",
    ],
    extras_require={
        "sspi": [
            "pywin32; sys_platform == 'win32'",
        ],
        "tests": [
            "pytest",
        ],
    },
    python_requires=">=3.7",
    author="Jordan Borean",
    author_email="jborean93@gmail.com",
    url="https://github.com/jborean93/pyauthctx",
    description="Client security context negotiation and message protection",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords="sspi security context authentication signing encryption",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.7",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
