from setuptools import setup, find_packages

with open("requirements.txt", "r") as f:
    requirements = f.read().splitlines()

setup(
    name="stax",
    version="0.1.0",
    packages=find_packages(include=["stax", "stax.*"]),
    include_package_data=True,
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        'console_scripts': [
            'stax=stax.cli:main',
        ],
    },
    description="Pull WP Engine sites into a local DDEV environment",
    keywords="wordpress, wpengine, ddev, sync",
    python_requires=">=3.9",
)
