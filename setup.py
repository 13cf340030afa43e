# -*- coding: utf-8 -*-
"""gcp_secret_rekeyer a module for rotating cloud credentials without downtime.

This module provides the orchestration for rekeying secrets, a provider capability model, a
rekeying task state machine and a lease coordinated datastore on google cloud storage.

"""

import setuptools
import re
from io import open

VERSIONFILE="gcp_secret_rekeyer/_version.py"
verstrline = open(VERSIONFILE, "rt").read()
VSRE = r"^__version__ = ['\"]([^'\"]*)['\"]"
mo = re.search(VSRE, verstrline, re.M)
if mo:
    verstr = mo.group(1)
else:
    raise RuntimeError("Unable to find version string in %s." % (VERSIONFILE,))

with open("README.md", "r", encoding='utf-8') as fh:
    long_description = fh.read()

setuptools.setup(
    name='gcp_secret_rekeyer',
    version=verstr,
    author="Mike Moore",
    author_email="z_z_zebra@yahoo.com",
    description="Rotate credentials for cloud resources and distribute the new values to the applications using them without downtime",
    long_description_content_type="text/markdown",
    long_description=long_description,
    url="https://github.com/Mikemoore63/gcp-secret-rekeyer",
    packages=setuptools.find_packages(),
    include_package_data=True,
    license="MIT",
    scripts=[],
    python_requires=">=3.8",
    install_requires=[
        "google-auth>=2.0,<3.0",
        "google-cloud-secret-manager~=2.0",
        "google-cloud-storage>1.0,<4.0",
        "google-crc32c~=1.0",
        "grpcio~=1.0",
        "python-dateutil~=2.0",
        "cryptography>=41.0"
    ],
    extras_require={
        "test": ["pytest",
                 "pytz>=2022.0"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],

)
