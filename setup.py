from setuptools import setup, find_packages

setup(
    name='hci-bootstrap',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'paramiko',
        'pydantic>=2',
        'python-dotenv',
        'requests',
        'urllib3',
        'pyyaml',
        'jsonschema',
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'hci-bootstrap=hcibootstrap.cli:app'
        ]
    },
    author='Your Name',
    description='Temporary PXE bootstrap node that brings up a bare-metal Kubernetes cluster and its platform add-ons',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
