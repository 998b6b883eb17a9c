"""
Knowledge base search, the retrieval collaborator of the chat graph.

Retrieval strategy:
  1. Vector search via pgvector (limit * 2 candidates)
  2. BM25 re-ranking over those candidates (reduces to limit)
  3. user_id metadata filter for multi-tenancy, plus caller filters
  4. Relevance floor on the vector similarity score

LlamaIndex handles embedding and vector storage; ingestion happens outside
this service. Any failure yields an empty result list.
"""

from functools import lru_cache
from urllib.parse import urlparse

from llama_index.core import Settings, StorageContext, VectorStoreIndex
from llama_index.core.node_parser import SentenceSplitter
from llama_index.core.schema import NodeWithScore
from llama_index.core.vector_stores import MetadataFilter, MetadataFilters
from llama_index.embeddings.openai import OpenAIEmbedding
from llama_index.vector_stores.postgres import PGVectorStore
from pydantic import BaseModel, Field
from rank_bm25 import BM25Okapi

from chat_orchestrator.core.config import get_settings
from chat_orchestrator.core.graph_state import Document, DocumentMetadata
from chat_orchestrator.core.logging import get_logger

log = get_logger(__name__)


class SearchOptions(BaseModel):
    limit: int = Field(default=5, ge=1, le=50)
    min_relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    filters: dict[str, str] = Field(default_factory=dict)


def configure_llamaindex() -> None:
    """
    Configure LlamaIndex global LLM and embedding settings.
    Call once at application startup (FastAPI lifespan hook).
    """
    settings = get_settings()

    if settings.litellm_mode == "library":
        from llama_index.llms.litellm import LiteLLM
        Settings.llm = LiteLLM(model=settings.primary_model)
    else:
        from llama_index.llms.openai import OpenAI
        Settings.llm = OpenAI(
            model=settings.primary_model,
            api_base=settings.litellm_base_url,
            api_key=settings.litellm_master_key,
        )

    embed_kwargs: dict = {"model": settings.embedding_model, "embed_batch_size": 100}
    if settings.litellm_mode == "proxy":
        embed_kwargs["api_base"] = settings.litellm_base_url
        embed_kwargs["api_key"] = settings.litellm_master_key

    Settings.embed_model = OpenAIEmbedding(**embed_kwargs)
    Settings.node_parser = SentenceSplitter(chunk_size=512, chunk_overlap=64)


@lru_cache
def get_vector_store() -> PGVectorStore:
    db_url = urlparse(get_settings().database_url)
    return PGVectorStore.from_params(
        database=db_url.path.lstrip("/"),
        host=db_url.hostname,
        password=db_url.password,
        port=db_url.port or 5432,
        user=db_url.username,
        table_name="llamaindex_documents",
        embed_dim=1536,
        hnsw_kwargs={"hnsw_m": 16, "hnsw_ef_construction": 64},
    )


@lru_cache
def get_index() -> VectorStoreIndex:
    vector_store = get_vector_store()
    storage_context = StorageContext.from_defaults(vector_store=vector_store)
    return VectorStoreIndex.from_vector_store(vector_store, storage_context=storage_context)


def _get_retriever(similarity_top_k: int, user_id: str, filters: dict[str, str]):
    """
    Build a retriever scoped to one user's documents.
    Fetches 2x top_k candidates so BM25 re-ranking has room to work.
    """
    metadata_filters = [MetadataFilter(key="user_id", value=user_id)]
    metadata_filters += [MetadataFilter(key=key, value=value) for key, value in filters.items()]
    return get_index().as_retriever(
        similarity_top_k=similarity_top_k,
        filters=MetadataFilters(filters=metadata_filters),
    )


def _bm25_rerank(query: str, nodes: list[NodeWithScore], top_k: int) -> list[NodeWithScore]:
    """Re-rank retrieved nodes by BM25 keyword score and return top_k."""
    if len(nodes) <= top_k:
        return nodes
    corpus = [node.get_content().lower().split() for node in nodes]
    bm25 = BM25Okapi(corpus)
    scores = bm25.get_scores(query.lower().split())
    ranked = sorted(range(len(nodes)), key=lambda i: scores[i], reverse=True)
    return [nodes[i] for i in ranked[:top_k]]


def _to_document(scored: NodeWithScore) -> Document:
    metadata = scored.node.metadata or {}
    return Document(
        id=scored.node.node_id,
        title=str(metadata.get("title") or metadata.get("file_name") or ""),
        body=scored.node.get_content(),
        metadata=DocumentMetadata(
            source=str(metadata.get("source", "knowledge_base")),
            url=metadata.get("url"),
            relevance_score=float(scored.score or 0.0),
        ),
    )


class KnowledgeBaseSearch:
    """search(user_id, query, options) -> list[Document]; never raises."""

    async def search(self, user_id: str, query: str, options: SearchOptions | None = None) -> list[Document]:
        options = options or SearchOptions()
        try:
            retriever = _get_retriever(options.limit * 2, user_id, options.filters)
            nodes = await retriever.aretrieve(query)
            nodes = _bm25_rerank(query, nodes, top_k=options.limit)
            docs = [_to_document(node) for node in nodes]
        except Exception as exc:
            log.error("search_failed", user_id=user_id, error=str(exc), error_type=type(exc).__name__)
            return []

        docs = [doc for doc in docs if doc.metadata.relevance_score >= options.min_relevance]
        log.debug("retrieval_done", user_id=user_id, candidates=len(nodes), returned=len(docs))
        return docs
