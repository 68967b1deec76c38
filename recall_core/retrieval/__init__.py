"""检索编排：原生结构化搜索、legacy 语义查找与全文回退，以及轻量向量检索后端。"""
