from enum import Enum


class CloudProvider(str, Enum):
    """Provider tags accepted by the ingestion pipeline."""
    AWS = "AWS"
    AZURE = "AZURE"
    GCP = "GCP"
    KUBERNETES = "KUBERNETES"


# Cost Explorer is a global service served out of us-east-1
AWS_COST_EXPLORER_REGION = "us-east-1"

AWS_SUPPORTED_REGIONS = [
    "us-east-1", "us-east-2", "us-west-1", "us-west-2",
    "af-south-1", "ap-east-1", "ap-south-1", "ap-northeast-1",
    "ap-northeast-2", "ap-northeast-3", "ap-southeast-1", "ap-southeast-2",
    "ca-central-1", "eu-central-1", "eu-west-1", "eu-west-2",
    "eu-west-3", "eu-north-1", "eu-south-1", "me-south-1",
    "sa-east-1",
]

COST_INGESTION_JOB_TYPE = "cost_ingestion"
