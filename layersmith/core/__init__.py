"""Build engine core: parser, planner, cache, executor, assembler and their stores."""
