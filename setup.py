from setuptools import setup, find_packages

setup(
    name="ghrelay",
    version="0.1.0",
    description="Local daemon that relays GitHub GraphQL and REST calls with a shared rate budget, cache and request coalescing",
    author="phisanti",
    author_email="tisalon@outlook.com",
    license="MIT",
    packages=find_packages(include=["ghrelay", "ghrelay.*"]),
    install_requires=[
        "httpx>=0.27.0",
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0",
        "typer>=0.12.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ghrelay=ghrelay.main:ghrelay",
        ],
    },
    python_requires=">=3.10",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
