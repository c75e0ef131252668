from setuptools import setup

setup(
    name="dissect.hivetree",
    packages=["dissect.hivetree"],
    install_requires=[
        "dissect.cstruct>=3.0.dev,<5.0.dev",
        "dissect.regf>=3.0.dev,<4.0.dev",
        "dissect.util>=3.0.dev,<4.0.dev",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
)
