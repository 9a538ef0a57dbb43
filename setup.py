from setuptools import find_packages, setup

setup(
    name="histree",
    version="0.1.0",
    description="Distributed level-wise histogram tree growth for gradient boosting",
    packages=find_packages(include=["histree", "histree.*"]),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "torch>=2.0",
    ],
    extras_require={
        "test": ["pytest>=7", "pandas>=1.5"],
        "examples": ["scikit-learn>=1.2", "pandas>=1.5"],
    },
)
