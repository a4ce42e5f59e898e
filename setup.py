from setuptools import setup, find_packages

setup(
    name='kubeinstall',
    version='0.1.0',
    packages=find_packages(exclude=['kubeinstall.tests']),
    include_package_data=True,
    package_data={
        'kubeinstall': ['templates/*.j2'],
    },
    install_requires=[
        'typer[all]',
        'rich',
        'fastapi',
        'uvicorn',
        'python-dotenv',
        'requests',
        'paramiko',
        'pyyaml',
        'jinja2',
        'pydantic>=2',
    ],
    extras_require={
        'test': [
            'pytest',
            'jsonschema',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'kubeinstall=kubeinstall.cli:app'
        ]
    },
    author='Your Name',
    description='CLI and API for provisioning kubeadm clusters on Linux hosts over SSH',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
