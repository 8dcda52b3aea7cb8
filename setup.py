from setuptools import find_packages, setup

setup(
    name="termopt",
    version="0.0",
    description="Composable objective functions with parallel evaluation and an augmented Lagrangian solver",
    author="brentyi",
    author_email="brentyi@berkeley.edu",
    license="BSD",
    package_dir={"": "src"},
    packages=find_packages("src"),
    package_data={"termopt": ["py.typed"]},
    python_requires=">=3.12",
    install_requires=[
        "numpy",
        "scipy",
        "loguru",
        "jax_dataclasses>=1.0.0",
        "overrides",
    ],
    extras_require={
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "type-checking": [
            "mypy",
        ],
    },
)
