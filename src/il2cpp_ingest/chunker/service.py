import uuid
from typing import List, Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ..core.logging import logger
from ..models.chunk import Chunk

# Preferred chunk boundaries in an IL2CPP dump, strongest first:
# closing brace of a class/method, end of a field/statement, any line end,
# then a hard cut.
DUMP_SEPARATORS = ["}\n", ";\n", "\n", ""]


class ContentChunker:
    """
    Service to split dump content into bounded chunks.

    Chunks never overlap and never exceed ``chunk_size`` characters, so their
    contents concatenate back to the input exactly.
    """

    def __init__(self, separators: Optional[List[str]] = None):
        self.separators = separators or DUMP_SEPARATORS

    def _splitter(self, chunk_size: int) -> RecursiveCharacterTextSplitter:
        # Separators stay on the piece they end and nothing is stripped,
        # otherwise the pieces would not add back up to the input.
        return RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=0,
            strip_whitespace=False,
            keep_separator="end",
            separators=self.separators,
        )

    def split(self, content: str, chunk_size: int, run_id: Optional[str] = None) -> List[Chunk]:
        """
        Split content into ordered chunks.

        Args:
            content: Text to split.
            chunk_size: Upper bound on chunk length in characters.
            run_id: Suffix for chunk ids; a fresh one is generated if omitted.

        Returns:
            Chunks in content order.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

        run_id = run_id or uuid.uuid4().hex[:8]
        pieces = self._splitter(chunk_size).split_text(content) if content else []

        chunks: List[Chunk] = []
        position = 0
        for i, text in enumerate(pieces):
            end = position + len(text)
            chunks.append(
                Chunk(
                    id=f"chunk_{i}_{run_id}",
                    index=i,
                    start_position=position,
                    end_position=end,
                    content=text,
                    size=len(text),
                    size_bytes=len(text.encode("utf-8")),
                )
            )
            position = end

        if position != len(content):
            raise ValueError(
                f"Split produced {position} of {len(content)} characters; separators must be kept"
            )

        logger.debug(f"Split {len(content)} characters into {len(chunks)} chunks (chunk_size={chunk_size})")
        return chunks
