"""
Configuration for the graph, vector, Bedrock and pipeline backends, read from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    role_model_ids: Dict[str, str] = field(default_factory=dict)

    def model_for_role(self, role: str) -> str:
        """Resolve the model id used for a language model role, falling back to the default model."""
        return self.role_model_ids.get(role.lower()) or self.model_id


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str
    use_iam: bool = True


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    service: str = 'es'
    use_ssl: bool = True


@dataclass
class MemoryConfig:
    """Configuration for memorygram storage and retrieval."""
    embedding_mode: str  # 'shared' or 'per_space'
    default_top_k: int
    default_query_space: str
    max_content_length: int


@dataclass
class PipelineConfig:
    """Configuration for pipeline manifests and execution."""
    storage_path: str
    run_timeout_seconds: float
    null_stage_delay_seconds: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    pipeline: PipelineConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    default_llm_model = os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0')
    role_model_ids = {
        'master': os.getenv('BEDROCK_LLM_MASTER_MODEL_ID', default_llm_model),
        'reformulator': os.getenv('BEDROCK_LLM_REFORMULATOR_MODEL_ID', default_llm_model)
    }
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=default_llm_model,
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          role_model_ids=role_model_ids)

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   use_iam=_env_bool('NEPTUNE_USE_IAM', 'true'))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memorygrams'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'),
                                         use_ssl=_env_bool('OPENSEARCH_USE_SSL', 'true'))

    # Memory configuration
    memory_config = MemoryConfig(embedding_mode=os.getenv('MEMORY_EMBEDDING_MODE', 'shared'),
                                 default_top_k=int(os.getenv('MEMORY_DEFAULT_TOP_K', '5')),
                                 default_query_space=os.getenv('MEMORY_DEFAULT_QUERY_SPACE', 'Content'),
                                 max_content_length=int(os.getenv('MEMORY_MAX_CONTENT_LENGTH', '100000')))

    # Pipeline configuration
    pipeline_config = PipelineConfig(storage_path=os.getenv('PIPELINE_STORAGE_PATH', './data/pipelines'),
                                     run_timeout_seconds=float(os.getenv('PIPELINE_RUN_TIMEOUT_SECONDS', '300')),
                                     null_stage_delay_seconds=float(os.getenv('PIPELINE_NULL_STAGE_DELAY_SECONDS', '0.5')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     pipeline=pipeline_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
