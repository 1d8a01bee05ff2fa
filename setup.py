import io
import os
import re

from setuptools import find_packages, setup


with io.open("flask_workflow/__init__.py", "rt", encoding="utf8") as f:
    version = re.search(r"__version__ = \"(.*?)\"", f.read()).group(1)


def fpath(name):
    return os.path.join(os.path.dirname(__file__), name)


def read(fname):
    return open(fpath(fname)).read()


def desc():
    return read("README.rst")


setup(
    name="Flask-Workflow",
    version=version,
    license="BSD",
    author="Flask-Workflow developers",
    description=(
        "Workflow execution engine for Flask: process templates, step routing,"
        " assignment, escalation and scheduled maintenance jobs."
    ),
    long_description=desc(),
    long_description_content_type="text/x-rst",
    packages=find_packages(exclude=["tests*"]),
    package_data={"": ["LICENSE"]},
    entry_points={
        "flask.commands": ["workflow=flask_workflow.cli:workflow"],
    },
    include_package_data=True,
    zip_safe=False,
    platforms="any",
    install_requires=[
        "celery>=5.2, <6",
        "click>=8, <9",
        "Flask>=2.2, <4",
        "Flask-Mail>=0.9.1, <1.0.0",
        "Flask-SQLAlchemy>=3.0, <4",
        "kombu>=5.2, <6",
        "marshmallow>=3.18.0, <5",
        "marshmallow-sqlalchemy>=0.28.0, <2.0.0",
        "python-dateutil>=2.3, <3",
        "SQLAlchemy>=1.4.18, <3",
        "werkzeug<4",
    ],
    extras_require={
        "redis": ["redis>=4, <6"],
        "testing": ["pytest>=7"],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Web Environment",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    python_requires=">=3.8",
)
