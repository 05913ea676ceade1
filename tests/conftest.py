import os

import pytest

from converge.loader import load_configuration
from converge.providers import MemoryProvider, ProviderRegistry
from converge.state import MemoryStateStore

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")

AWS_COMPUTED = {
    "aws_acm_certificate": {
        "arn": "arn:aws:acm:us-east-1:000000000000:certificate/{id}",
        "validation_record_name": "_acme.{domain_name}",
        "validation_record_value": "_token.acm-validations.aws",
    },
    "aws_route53_record": {"fqdn": "{name}"},
    "aws_lb": {"dns_name": "{name}-1234.us-east-1.elb.amazonaws.com"},
    "aws_iam_role": {"arn": "arn:aws:iam::000000000000:role/{name}"},
    "aws_acm_certificate_validation": {},
    "AWS::CertificateManager::Certificate": {
        "ValidationRecordName": "_acme.{DomainName}",
        "ValidationRecordValue": "_token.acm-validations.aws",
    },
    "AWS::ElasticLoadBalancingV2::LoadBalancer": {"DNSName": "{Name}-1234.us-east-1.elb.amazonaws.com"},
}

AWS_DATA_SOURCES = {
    "aws_route53_zone": {"zone_id": "Z-{name}"},
}


def make_registry(latency: float = 0.0):
    aws = MemoryProvider("aws", computed=AWS_COMPUTED, data_sources=AWS_DATA_SOURCES, latency=latency)
    return ProviderRegistry({"aws": aws}, default=MemoryProvider("default", latency=latency))


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def stack():
    return load_configuration([os.path.join(FIXTURES, "stack.tf")])


@pytest.fixture
def template_stack():
    return load_configuration([os.path.join(FIXTURES, "stack.yaml")])
