from memquery.core.store import (
    add_message,
    get_message,
    get_session_messages,
    delete_message,
)
from memquery.core.retrieval import (
    search_messages,
    execute_search_query,
    filter_valid_results,
)
from memquery.core.filters import (
    parse_metadata_filter,
    compile_filter,
    compile_metadata_filter,
)
from memquery.core.mmr import (
    maximal_marginal_relevance,
    rerank_mmr,
)
