"""
本文件用于保存聚类提示词模板，并提供按占位符渲染的入口。
主要对象:
- `CLUSTER_PROMPT`: 聚类 + 排名 + 摘要的 JSON 输出指令
- `render_prompt`: 渲染模板（缺少占位符时抛出 KeyError）
"""

CLUSTER_PROMPT = """
SYSTEM/TOOL INSTRUCTION (deterministic)
- You are a news clustering-and-summarisation assistant, with excellent understanding of drivers that move financial markets.
- Temperature = 0 (deterministic).
- Embedding method = text-embedding-3-small.
- Clustering method:
  • Algorithm = Agglomerative Clustering
  • affinity = "precomputed" (cosine distance)
  • linkage = "average"
  • distance_threshold ≈ 0.6

TASK
Goal: Group these articles into topic clusters, rank clusters by how much they will move financial markets (largest impact ranked higher), then write a ≤50-word summary for each of the top {top_n} clusters.

1) Embeddings-based clustering
• Create a semantic embedding for each article using the provided embedding method on EMBED_TEXT (title + " - " + first {embed_chars} characters of content).
• Cluster using the specified clustering method/threshold (tune threshold slightly if necessary to avoid over/under-splitting).
• Clusters should reflect the same *market-moving topic*, not generic keywords.

2) Rank clusters by market impact
• For each cluster, compute a primary "market_impact_score" in [0,1] = your estimate of how much this topic is likely to move markets now.
• Then compute "total_score" used for ranking:
  total_score = market_impact_score
              + 0.4*log1p(cluster_size)
              + 0.3*log1p(unique_sources)
              + 0.5*freshness
  where "freshness" is the normalized recency (0–1) of the newest article within the provided window.

3) Summarise only the top {top_n}
• Take the top {top_n} clusters by total_score.
• Read titles and SUMMARY_TEXT (title + first {summary_chars} chars of content) of members in that cluster.
• Produce one ≤50-word factual, concise key-takeaway "summary" per selected cluster. No hype. No repetition.

4) Output (JSON-only; no prose)
Return a single JSON object with two arrays:

{{
  "clusters": [
    {{
      "topic_label": "string (≤80 chars, specific market topic)",
      "member_ids": [<article id>, ...],
      "market_impact_score": 0.0,
      "size": 0,
      "sources_count": 0,
      "freshness_score": 0.0,
      "breaking": false,
      "total_score": 0.0,
      "rank": 0
    }}
  ],
  "top_summaries": [
    {{
      "cluster_rank": 0,
      "summary": "≤50 words"
    }}
  ]
}}

Field notes: "size" = number of member_ids; "sources_count" = distinct sources among members; "breaking" is true only for a clearly sudden development; "rank" is 1..N across ALL clusters by total_score descending.

CONSTRAINTS
• Deterministic output.
• No personal data. No opinions. Be precise.
• If fewer than {top_n} clusters exist, return as many as available in "top_summaries".
• Arrays must be consistent: every "cluster_rank" in "top_summaries" must correspond to a cluster object with the same "rank" in "clusters".
• Do not include any fields other than those specified above.

{window_info}

ARTICLES
{listing}
"""


def render_prompt(template: str, **kwargs) -> str:
    return template.format(**kwargs).strip()
