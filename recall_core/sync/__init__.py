"""会话同步：注入标记清洗、按 agent 串行的写入链，以及原生/legacy 双路写回。"""
