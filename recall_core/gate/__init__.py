"""预取闸门：规则打分判定与可选的 LLM 二次分类。"""
