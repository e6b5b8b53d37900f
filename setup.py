import os
from setuptools import setup
from setuptools import find_packages

VERSION = "1.0"

requires = [
    "transaction",
]

tests_require = ["pytest", "pytest-cov", "nox", "mock"]

here = os.path.abspath(os.path.dirname(__file__))
README = open(os.path.join(here, "README.rst")).read()

setup(
    name="branchfs",
    version=VERSION,
    description="A filesystem view of a git branch, committing every change.",
    long_description=README,
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Version Control :: Git",
        "Topic :: System :: Filesystems",
    ],
    keywords="git branch filesystem commit",
    packages=find_packages(exclude=["tests"]),
    include_package_data=True,
    zip_safe=False,
    python_requires=">=3.9",
    install_requires=requires,
    tests_require=tests_require,
    extras_require={
        "testing": tests_require,
    },
)
