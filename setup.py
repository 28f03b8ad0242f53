from setuptools import setup, find_packages

setup(
    name="dissect.qcow2info",
    version="1.0.0",
    packages=list(map(lambda v: "dissect." + v, find_packages("dissect"))),
    python_requires=">=3.9",
    install_requires=[
        "dissect.cstruct>=4.0.dev,<5.0.dev",
        "dissect.util>=3.0.dev,<4.0.dev",
        "rich",
    ],
    extras_require={
        "test": [
            "pytest",
        ]
    },
    entry_points={
        "console_scripts": [
            "qcow2-info=dissect.qcow2info.tools.qcow2info:main",
        ]
    },
)
