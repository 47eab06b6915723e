"""Operations API for the sync worker."""
